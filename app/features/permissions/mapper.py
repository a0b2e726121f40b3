"""
Mapping from HTTP requests to abstract actions and resource types.
"""
from typing import Optional

from app.core import config
from app.features.permissions.types import WILDCARD


ACTION_CREATE = "create"
ACTION_READ = "read"
ACTION_UPDATE = "update"
ACTION_DELETE = "delete"

METHOD_ACTIONS = {
    "GET": ACTION_READ,
    "POST": ACTION_CREATE,
    "PUT": ACTION_UPDATE,
    "PATCH": ACTION_UPDATE,
    "DELETE": ACTION_DELETE,
}


def map_method_to_action(method: str) -> str:
    """GET/POST/PUT/PATCH/DELETE to read/create/update/delete; anything else is "*"."""
    return METHOD_ACTIONS.get(method.upper(), WILDCARD)


def extract_resource(path: str, explicit: Optional[str] = None, segment_index: Optional[int] = None) -> str:
    """
    Resource type for a request path.

    An explicit resource always wins. Otherwise the path is split on "/" and
    the configured segment is used, e.g. with index 4:

        /api/oss/group/file/42 -> ["", "api", "oss", "group", "file", "42"] -> "file"

    A path too short for the index (or an empty segment) gives "*".
    """
    if explicit:
        return explicit
    if segment_index is None:
        segment_index = config.RBAC_RESOURCE_SEGMENT_INDEX
    parts = path.split("/")
    if segment_index < 0 or len(parts) <= segment_index or not parts[segment_index]:
        return WILDCARD
    return parts[segment_index]
