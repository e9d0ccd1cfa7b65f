"""Terminal and process orchestration core for the ProjectDeck launcher."""

__version__ = "0.1.0"
