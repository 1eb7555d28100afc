"""Quiz, flashcard and mock-test generation API with usage metering."""

__version__ = "0.1.0"
