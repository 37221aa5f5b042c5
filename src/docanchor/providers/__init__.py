"""
Provider dispatchers, one per external anchoring system.
"""

from .base import ConnectionCheck, DispatchResult, ProviderDispatcher
from .githost import GitHubDispatcher, GitLabDispatcher, create_git_dispatcher
from .rfc3161 import RFC3161Dispatcher
from .transparency_log import TransparencyLogDispatcher
from .tsa_profiles import PROFILES, TSAProfile

__all__ = [
    "ConnectionCheck",
    "DispatchResult",
    "GitHubDispatcher",
    "GitLabDispatcher",
    "PROFILES",
    "ProviderDispatcher",
    "RFC3161Dispatcher",
    "TSAProfile",
    "TransparencyLogDispatcher",
    "create_git_dispatcher",
]
