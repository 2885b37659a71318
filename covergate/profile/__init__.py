"""
Covergate Coverage Profiles.

Block-level coverage profiles: model, text format and merging.
"""

from covergate.profile.models import BlockKey, CoverageBlock, CoverMode, Profile
from covergate.profile.store import ProfileStore, merge_files

__all__ = [
    "BlockKey",
    "CoverageBlock",
    "CoverMode",
    "Profile",
    "ProfileStore",
    "merge_files",
]
