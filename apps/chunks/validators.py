"""Chunk name validation.

A chunk name is used verbatim as a single path segment under the store root,
so this is the only barrier against path traversal. It runs before any
filesystem access.
"""
import re

from apps.exceptions import InvalidName

# bytes of the UTF-8 encoding; the filesystem limit for one path segment
MAX_NAME_LENGTH = 255

_FORBIDDEN_CHARS = ('/', '\\', '\x00')

# Windows device names, with or without an extension
_DEVICE_NAME = re.compile(r'^(con|prn|aux|nul|com[1-9]|lpt[1-9])(\..*)?$', re.IGNORECASE)


def validate_name(name: str) -> str:
    if not isinstance(name, str) or not name.strip():
        raise InvalidName('Chunk name must not be empty')
    try:
        encoded = name.encode('utf-8')
    except UnicodeEncodeError as e:
        raise InvalidName('Chunk name is not valid UTF-8 text') from e
    if len(encoded) > MAX_NAME_LENGTH:
        raise InvalidName(f'Chunk name exceeds {MAX_NAME_LENGTH} bytes')
    if any(ch in name for ch in _FORBIDDEN_CHARS):
        raise InvalidName(f"Chunk name '{name}' contains a path separator")
    if name in ('.', '..'):
        raise InvalidName(f"Chunk name '{name}' is a parent-directory segment")
    # dot-prefixed names are reserved for in-flight upload files
    if name.startswith('.'):
        raise InvalidName(f"Chunk name '{name}' is reserved")
    if _DEVICE_NAME.match(name):
        raise InvalidName(f"Chunk name '{name}' is reserved")
    return name


def storage_path_for(name: str) -> str:
    """Storage path of a validated name, relative to the store root."""
    return name
