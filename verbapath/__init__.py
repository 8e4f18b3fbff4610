"""VerbaPath: adaptive learning pathways for English language learners."""

__version__ = "1.0.0"
