"""Errors raised while cache-busting CSS resource URLs."""

from typing import Optional


class CacheBusterError(Exception):
    """Base error for the css_cache_buster plugin."""

    def __init__(self, message: str, *, cause: Optional[BaseException] = None) -> None:
        super().__init__(message)
        self.cause = cause


class UnsupportedInputKind(CacheBusterError):
    """The CSS document was handed over as a stream instead of text or bytes."""

    def __init__(self, kind: type) -> None:
        super().__init__(
            f"Streaming not supported: expected str or bytes, got {kind.__name__}"
        )
        self.kind = kind


class ResourceError(CacheBusterError):
    """A resource listed in the URL table could not be hashed."""

    describe = "Unable to hash"

    def __init__(self, locator: str, cause: BaseException) -> None:
        super().__init__(f"{self.describe} {locator!r}: {cause}", cause=cause)
        self.locator = locator


class ResourceReadFailure(ResourceError):
    describe = "Unable to read local resource"


class ResourceFetchFailure(ResourceError):
    describe = "Unable to fetch remote resource"


class TransformFailure(CacheBusterError):
    """Wraps a resource error raised while transforming one CSS document."""

    def __init__(self, stage: str, cause: BaseException) -> None:
        super().__init__(f"css_cache_buster failed during {stage}: {cause}", cause=cause)
        self.stage = stage
