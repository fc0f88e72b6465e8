"""
Agent Chat Router

Intent classification, context switching, multi-agent conversations,
support routing and feedback-driven prompt improvement for AI chat.
"""

__version__ = "1.0.0"
