"""Exception taxonomy for lifecycle operations."""

from __future__ import annotations

from typing import Any, Optional


class FoundryLocalError(Exception):
    """Base class. Subclasses keep their context as attributes."""

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"error": type(self).__name__, "message": str(self)}
        for key, value in vars(self).items():
            if not key.startswith("_"):
                data[key] = value
        return data


class CatalogUnavailable(FoundryLocalError):
    def __init__(self, source: str, reason: str) -> None:
        self.source = source
        self.reason = reason
        super().__init__(f"Catalog unavailable from {source}: {reason}")


class VariantNotFound(FoundryLocalError):
    def __init__(self, alias: Optional[str], variant_id: Optional[str] = None) -> None:
        self.alias = alias
        self.variant_id = variant_id
        if variant_id is None:
            msg = f"Unknown model alias {alias!r}"
        elif alias is None:
            msg = f"Unknown model variant {variant_id!r}"
        else:
            msg = f"Variant {variant_id!r} does not exist under alias {alias!r}"
        super().__init__(msg)


class NoCompatibleVariant(FoundryLocalError):
    def __init__(self, alias: str, devices: list[str]) -> None:
        self.alias = alias
        self.devices = devices
        super().__init__(
            f"No variant of {alias!r} runs on this machine (devices: {', '.join(devices)})"
        )


class DownloadFailed(FoundryLocalError):
    def __init__(
        self,
        variant_id: str,
        reason: str,
        url: Optional[str] = None,
        status_code: Optional[int] = None,
    ) -> None:
        self.variant_id = variant_id
        self.reason = reason
        self.url = url
        self.status_code = status_code
        super().__init__(f"Download of {variant_id} failed: {reason}")


class IntegrityError(FoundryLocalError):
    """Downloaded bytes do not hash to the manifest value.

    ``offset`` is the number of bytes received for the file; ``size`` the
    manifest size.
    """

    def __init__(
        self,
        variant_id: str,
        path: str,
        expected: str,
        actual: str,
        offset: int,
        size: int,
    ) -> None:
        self.variant_id = variant_id
        self.path = path
        self.expected = expected
        self.actual = actual
        self.offset = offset
        self.size = size
        super().__init__(
            f"Integrity check failed for {variant_id}/{path} after {offset}/{size} bytes: "
            f"expected sha256 {expected}, got {actual}"
        )


class NotCached(FoundryLocalError):
    def __init__(self, variant_id: str) -> None:
        self.variant_id = variant_id
        super().__init__(f"Variant {variant_id} is not in the local cache; download it first")


class ServiceLaunchFailed(FoundryLocalError):
    def __init__(self, exit_code: Optional[int], detail: str = "") -> None:
        self.exit_code = exit_code
        self.detail = detail
        msg = f"Inference service exited during startup (exit code {exit_code})"
        if detail:
            msg += f": {detail}"
        super().__init__(msg)


class ServiceStartTimeout(FoundryLocalError):
    def __init__(self, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(f"Inference service did not publish an endpoint within {timeout}s")


class LoadRejected(FoundryLocalError):
    def __init__(
        self,
        variant_id: str,
        operation: str,
        status_code: Optional[int],
        body: str,
    ) -> None:
        self.variant_id = variant_id
        self.operation = operation
        self.status_code = status_code
        self.body = body
        super().__init__(
            f"Service rejected {operation} of {variant_id} (HTTP {status_code}): {body}"
        )


class OperationTimeout(FoundryLocalError):
    def __init__(self, operation: str, timeout: float, variant_id: Optional[str] = None) -> None:
        self.operation = operation
        self.timeout = timeout
        self.variant_id = variant_id
        target = f" of {variant_id}" if variant_id else ""
        super().__init__(f"{operation}{target} timed out after {timeout}s")


class ManagerClosed(FoundryLocalError):
    def __init__(self) -> None:
        super().__init__("Lifecycle manager has been shut down")
