"""
Adapter package - HTTP collaborator between transfer logic and the platform API.
"""
from .payload import Payload
from .rest import RestAdapter, error_for_response

__all__ = ["Payload", "RestAdapter", "error_for_response"]
