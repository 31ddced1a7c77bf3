"""Lifecycle interface for long-lived backend clients."""

from __future__ import annotations

from abc import ABC, abstractmethod


class Service(ABC):
    """A backend the app starts once and stops on shutdown (e.g. the renderer).

    Usable as ``async with`` for one-off scripts and tests.
    """

    @property
    @abstractmethod
    def service_name(self) -> str:
        ...

    @abstractmethod
    async def start(self) -> None:
        """Connect or probe; must not raise when the backend is merely unreachable."""

    @abstractmethod
    async def stop(self) -> None:
        """Release network clients and other resources."""

    @abstractmethod
    async def health_check(self) -> bool:
        ...

    async def __aenter__(self) -> Service:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()
