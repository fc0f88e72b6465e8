"""
Keyword rule tables for intent, context, ticket and feedback matching.
"""

from agentchat.rules.loader import RoutingRules, get_rules, load_rules

__all__ = ["RoutingRules", "get_rules", "load_rules"]
