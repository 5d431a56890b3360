"""
Schema - resource schemas and per-type rules

The schema registry answers "is this command well-formed?", the rules
registry answers "is it allowed?" and "what does the event do to state?".
"""

from eventfold.schema.registry import FieldSchema, SchemaRegistry
from eventfold.schema.rules import DefaultRules, ResourceRules, RulesRegistry

__all__ = [
    "FieldSchema",
    "SchemaRegistry",
    "DefaultRules",
    "ResourceRules",
    "RulesRegistry",
]
