"""
Exceptions raised by the zpkg update checker
"""


class UpdaterError(Exception):
    """Base class for every failure that ends a run"""


class ParseError(UpdaterError):
    """Local recipe or remote metadata is malformed"""


class FetchError(UpdaterError):
    """A network request failed, timed out or returned nothing"""


class ToolUnavailable(UpdaterError):
    """An external tool needed for a best-effort step is missing"""


class ManifestError(UpdaterError):
    """makepkg ran but could not regenerate .SRCINFO"""


class LockError(UpdaterError):
    """Another run is already working on the recipe"""


class RecipeWriteError(UpdaterError):
    """The recipe, its backup or a temporary copy could not be written"""
