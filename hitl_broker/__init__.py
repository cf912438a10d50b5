"""hitl-broker -- human-in-the-loop question/answer broker for agent processes."""

__version__ = "0.1.0"
