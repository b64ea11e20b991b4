"""
Known install locations of vendor PKCS#11 modules, and the checks that
decide whether a module path may be loaded at all.

Loading a PKCS#11 module means running native code inside this process, so
only libraries in the hardcoded per-platform locations below are accepted.
"""

import logging
import os
import platform as host_platform
import re
import sys
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from .errors import InitializationFailed, LibraryNotFound

__all__ = [
    'DetectedLibrary', 'KNOWN_LIBRARIES', 'ALLOWED_PREFIXES',
    'LIBRARY_EXTENSIONS', 'current_platform', 'known_paths', 'auto_detect',
    'validate_library_path', 'parse_arch_from_error',
    'arch_mismatch_error',
]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DetectedLibrary:
    name: str
    """Name of the certificate authority shipping the module."""

    path: str
    """Filesystem path of the module."""


# vendor -> {platform -> path}
KNOWN_LIBRARIES: Dict[str, Dict[str, str]] = {
    'VNPT-CA': {
        'linux': '/usr/lib/vnpt-ca/libcryptoki.so',
        'darwin': '/Library/vnpt-ca/lib/libcryptoki.dylib',
        'win32': 'C:\\vnpt-ca\\cryptoki.dll',
    },
    'Viettel-CA': {
        'linux': '/usr/lib/viettel-ca/libpkcs11.so',
        'darwin': '/usr/local/lib/viettel-ca_v6.dylib',
        'win32': 'C:\\Viettel-CA\\pkcs11.dll',
    },
    'FPT-CA': {
        'linux': '/usr/lib/fpt-ca/libpkcs11.so',
        'darwin': '/Library/FPT/libpkcs11.dylib',
        'win32': 'C:\\FPT-CA\\pkcs11.dll',
    },
    'OpenSC (Generic PKCS#11)': {
        'linux': '/usr/lib/x86_64-linux-gnu/opensc-pkcs11.so',
        'darwin': '/usr/local/lib/opensc-pkcs11.so',
        'win32': 'C:\\Program Files\\OpenSC Project\\OpenSC\\pkcs11\\'
                 'opensc-pkcs11.dll',
    },
}

ALLOWED_PREFIXES: Dict[str, Tuple[str, ...]] = {
    'linux': ('/usr/lib/', '/usr/local/lib/', '/opt/'),
    'darwin': ('/Library/', '/usr/local/lib/'),
    'win32': (
        'C:\\Program Files\\', 'C:\\Program Files (x86)\\',
        'C:\\vnpt-ca\\', 'C:\\Viettel-CA\\', 'C:\\FPT-CA\\',
    ),
}

# OpenSC installs a .so module on macOS as well
LIBRARY_EXTENSIONS: Dict[str, Tuple[str, ...]] = {
    'linux': ('.so',),
    'darwin': ('.dylib', '.so'),
    'win32': ('.dll',),
}


def current_platform() -> str:
    if sys.platform.startswith('win'):
        return 'win32'
    elif sys.platform == 'darwin':
        return 'darwin'
    return 'linux'


def known_paths(platform: Optional[str] = None) -> List[Tuple[str, str]]:
    """
    List the (vendor name, path) pairs for a platform, in priority order.
    """
    platform = platform or current_platform()
    return [
        (name, paths[platform]) for name, paths in KNOWN_LIBRARIES.items()
        if platform in paths
    ]


def auto_detect(platform: Optional[str] = None) -> List[DetectedLibrary]:
    """
    Probe the known install locations. This never touches any hardware and
    returns an empty list when no module is installed.
    """
    found = []
    for name, path in known_paths(platform):
        if os.path.isfile(path):
            logger.debug(f"Found PKCS#11 module for {name} at {path}")
            found.append(DetectedLibrary(name=name, path=path))
    if not found:
        logger.info("No known PKCS#11 module found on this system")
    return found


def _normalise(path: str, platform: str) -> str:
    if platform == 'win32':
        return path.lower().replace('/', '\\')
    return path


def validate_library_path(path: str, platform: Optional[str] = None) -> str:
    """
    Check that a module path lies in one of the allowed locations for the
    current platform and has the right extension.

    :param path:
        The path to check.
    :param platform:
        Platform key (``linux``, ``darwin`` or ``win32``).
    :return:
        The canonical path to load.
    :raises LibraryNotFound:
        if the path is not acceptable or does not exist.
    """
    platform = platform or current_platform()
    if not path or '\x00' in path:
        raise LibraryNotFound("No PKCS#11 module path was given.")
    canonical = os.path.realpath(path)
    norm = _normalise(canonical, platform)
    prefixes = ALLOWED_PREFIXES.get(platform, ())
    if not any(norm.startswith(_normalise(p, platform)) for p in prefixes):
        raise LibraryNotFound(
            f"PKCS#11 module path '{canonical}' is not in an allowed "
            f"location. Allowed: {', '.join(prefixes)}"
        )
    if not norm.endswith(LIBRARY_EXTENSIONS.get(platform, ('.so',))):
        raise LibraryNotFound(
            f"PKCS#11 module path '{canonical}' has an invalid extension."
        )
    if not os.path.isfile(canonical):
        raise LibraryNotFound(f"PKCS#11 module '{canonical}' does not exist.")
    return canonical


ARCH_HAVE = re.compile(r"have '([^']+)'")
ARCH_NEED = re.compile(r"need '([^']+)'")


def parse_arch_from_error(error_str: str) -> Optional[Tuple[str, str]]:
    """
    Extract the (library, host) architectures from a dynamic loader error
    such as ``have 'x86_64', need 'arm64e' or 'arm64'``.

    :return:
        ``None`` if the message does not describe an architecture mismatch.
    """
    have = ARCH_HAVE.search(error_str)
    if have is None:
        return None
    need = ARCH_NEED.search(error_str)
    host = need.group(1) if need is not None else host_platform.machine()
    return have.group(1), host


def arch_mismatch_error(error_str: str, library_path: str) \
        -> Optional[InitializationFailed]:
    """
    Turn a loader error into an actionable error message, if it is
    caused by an architecture mismatch.
    """
    archs = parse_arch_from_error(error_str)
    if archs is None:
        return None
    library_arch, host_arch = archs
    if 'arm64' in host_arch and 'x86_64' in library_arch:
        guidance = (
            "The vendor's PKCS#11 module only supports Intel (x86_64). "
            "Ask the certificate authority for an ARM64 build, or run this "
            "program under Rosetta 2."
        )
    elif 'x86_64' in host_arch and 'arm64' in library_arch:
        guidance = (
            "The vendor's PKCS#11 module only supports Apple Silicon "
            "(ARM64). Ask the certificate authority for an x86_64 build."
        )
    else:
        guidance = (
            f"The module '{library_path}' is not compatible with this "
            f"system's architecture. Contact the certificate authority."
        )
    return InitializationFailed(
        f"Architecture mismatch: module is {library_arch}, "
        f"system needs {host_arch}. {guidance}"
    )
