"""
AWS integrations layer.
"""
from materoom.aws.secrets import get_secret

__all__ = [
    "get_secret",
]
