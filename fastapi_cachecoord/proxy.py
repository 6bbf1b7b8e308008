"""Coordinator proxy for managing the process-wide coordinator instance."""

from logging import getLogger
from typing import TYPE_CHECKING

from .exceptions import BackendNotFoundError

if TYPE_CHECKING:
    from .coordinator import CacheCoordinator

_default_coordinator: "CacheCoordinator | None" = None
logger = getLogger(__name__)


class CoordinatorProxy:
    """FastAPI CacheCoord proxy for coordinator management."""

    @staticmethod
    def get_coordinator() -> "CacheCoordinator":
        """Get the current cache coordinator instance.

        Returns:
            The current cache coordinator

        Raises:
            BackendNotFoundError: If no coordinator has been set
        """
        if _default_coordinator is None:
            msg = "Coordinator is not set. Please set the coordinator first."
            raise BackendNotFoundError(msg)

        return _default_coordinator

    @staticmethod
    def set_coordinator(coordinator: "CacheCoordinator | None") -> None:
        """Set the coordinator serving the public cache routes.

        Args:
            coordinator: The coordinator to use, or None to clear the current one
        """
        global _default_coordinator
        logger.info(
            "Setting coordinator to: <%s>",
            coordinator.backend.__class__.__name__ if coordinator else "None",
        )
        _default_coordinator = coordinator
