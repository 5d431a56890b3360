"""
HTTP surfaces - thin REST translation layers over the pipeline
"""

from eventfold.api.command_api import create_command_app
from eventfold.api.query_api import create_query_app

__all__ = ["create_command_app", "create_query_app"]
