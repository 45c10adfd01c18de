"""fosscode: terminal AI coding agent."""

__version__ = "0.4.0"
