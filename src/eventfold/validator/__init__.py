"""
Validator - command log consumer

Decides every command exactly once: an event for the event log or a
rejection for the rejection sink.
"""

from eventfold.validator.validator import Validator

__all__ = ["Validator"]
