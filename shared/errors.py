"""Error taxonomy shared by the localization core and the HTTP layer."""
from __future__ import annotations

from typing import Any, Dict


class LocalizerError(Exception):
    """Base class for errors raised by the localization core."""


class ValidationError(LocalizerError):
    """Raised when a request payload is missing or malformed."""


class RunNotFound(LocalizerError):
    """Raised when a run id does not resolve to a stored run."""


class InsufficientCredits(LocalizerError):
    """Raised when a user's effective balance cannot cover an estimate."""

    def __init__(
        self,
        required: int,
        available: int,
        *,
        credits_per_image: int | None = None,
        total_images: int | None = None,
    ) -> None:
        super().__init__(f"Insufficient credits ({available} < {required})")
        self.required = required
        self.available = available
        self.credits_per_image = credits_per_image
        self.total_images = total_images

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "error": "Insufficient credits",
            "credits_required": self.required,
            "credits_available": self.available,
        }
        if self.credits_per_image is not None:
            payload["credits_per_image"] = self.credits_per_image
        if self.total_images is not None:
            payload["total_images"] = self.total_images
        return payload


class InvalidTransition(LocalizerError):
    """Raised when a run is asked to move to an unreachable status."""

    def __init__(self, current: Any, target: Any) -> None:
        current_value = getattr(current, "value", current)
        target_value = getattr(target, "value", target)
        super().__init__(f"Invalid status transition: {current_value} -> {target_value}")
        self.current = current
        self.target = target


class ExternalServiceError(LocalizerError):
    """Raised when a translation or image-generation call fails."""


class StorageError(LocalizerError):
    """Raised when a blob or database write could not be completed."""


class PermissionDenied(LocalizerError):
    """Raised when a user acts on a run owned by someone else."""
