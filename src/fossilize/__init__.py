"""Package Node.js applications into self-contained executables."""

from .build import BuildOptions, BuildResult, resolve_entrypoint
from .cache import BinaryCache
from .errors import (
    BundleError,
    CommandError,
    ErrorCode,
    FetchError,
    FossilizeError,
    InjectionError,
    MalformedManifestError,
    SignatureError,
    ValidationError,
)
from .inject import find_resource
from .platforms import PlatformTarget, normalize_platforms
from .signature import is_signed, strip_signature
from .signing import SigningCredentials, SigningOutcome

__version__ = "0.1.0"

__all__ = [
    "BinaryCache",
    "BuildOptions",
    "BuildResult",
    "BundleError",
    "CommandError",
    "ErrorCode",
    "FetchError",
    "FossilizeError",
    "InjectionError",
    "MalformedManifestError",
    "PlatformTarget",
    "SignatureError",
    "SigningCredentials",
    "SigningOutcome",
    "ValidationError",
    "__version__",
    "find_resource",
    "is_signed",
    "normalize_platforms",
    "resolve_entrypoint",
    "strip_signature",
]
