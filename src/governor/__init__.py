"""Agent Governor — orchestration and governance for specialist agents."""

__version__ = "0.1.0"
