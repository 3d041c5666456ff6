from typing import Any, Dict, NamedTuple, Optional

"""
Shared records and the error taxonomy for the .deb -> ACI image builder.

Everything that can go wrong during a conversion is raised as a subclass of
ConversionError. Each subclass names one stage of the pipeline (fetch, merge,
annotate, pack, manifest I/O), so the CLI can print one readable line and the
tests can assert on the stage that failed.

Parsing of dependency declarations never raises: it is a total function and
degrades to "no dependencies" on garbage input.
"""

##############################################################################
# Data structures
##############################################################################

class ResolvedPackage(NamedTuple):
    """
    One package chosen for the image.

     - name: the name it was requested by (the dedup key of the closure)
     - version: Version control field
     - architecture: Architecture control field (e.g. "amd64", "all")
     - filesystem_path: directory holding the extracted data tree
     - depends: raw dependency declaration, as the fetcher read it
    """
    name: str
    version: str
    architecture: str
    filesystem_path: str
    depends: str = ""


class Annotation(NamedTuple):
    name: str
    value: str

    def as_dict(self) -> Dict[str, str]:
        return {"name": self.name, "value": self.value}


##############################################################################
# Errors
##############################################################################

class ConversionError(RuntimeError):
    """
    Base class of every fatal conversion error.

    `context` holds structured fields (package, path, command, returncode...)
    so callers don't have to scrape the message.
    """
    kind = "conversion"

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = context

    def __str__(self) -> str:
        return self.message

    def get(self, key: str, default: Optional[Any] = None) -> Any:
        return self.context.get(key, default)


class FetchError(ConversionError):
    kind = "fetch"


class FilesystemError(ConversionError):
    kind = "filesystem"


class IdentifierError(ConversionError):
    kind = "identifier"


class PackError(ConversionError):
    kind = "pack"


class ManifestError(ConversionError):
    kind = "manifest"
