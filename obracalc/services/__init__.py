"""Abstract service ports and their OpenAI / Redis implementations."""
