"""
eventfold - schema-driven CQRS pipeline

Commands go into a partitioned command log, a validator turns each one
into exactly one event or rejection, and a materializer folds the event
log into a queryable read store. Resource types, their fields and their
uniqueness constraints come from configuration.
"""

from eventfold.pipeline import Pipeline

__version__ = "0.1.0"
__all__ = ["Pipeline", "__version__"]
