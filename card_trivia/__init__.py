"""Card trivia game and its Discord bot."""
