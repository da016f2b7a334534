"""
CLI Context for managing application dependencies.

Provides a clean way to manage CLI-level dependencies like settings and the
REST adapter, avoiding global state and enabling dependency injection.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import httpx

from .adapter import RestAdapter
from .packages import LocalImageStore
from .settings import Settings, create_settings_from_env
from .transfer import ProgressFactory, progress_factory

OUTPUT_FORMATS = ("table", "json", "yaml")


@dataclass
class CLIContext:
    """
    Shared context for CLI commands.

    Holds settings, output preferences and the REST adapter for one command
    invocation. Tests construct it directly (with an in-memory transport) and
    hand it to the CLI runner as ``obj``.
    """
    settings: Settings
    output: str = "table"
    silent: bool = False
    transport: Optional[httpx.BaseTransport] = None
    image_store: Optional[LocalImageStore] = None
    _adapter: Optional[RestAdapter] = None

    def __post_init__(self):
        if self.output not in OUTPUT_FORMATS:
            raise ValueError(f"Invalid output format '{self.output}'. Use one of: {', '.join(OUTPUT_FORMATS)}")

    @classmethod
    def from_env(cls, output: str = "table", silent: bool = False) -> CLIContext:
        """
        Create CLI context from environment variables.

        Returns:
            CLIContext with settings loaded from environment
        """
        return cls(settings=create_settings_from_env(), output=output, silent=silent)

    @property
    def adapter(self) -> RestAdapter:
        """
        Get or create the REST adapter (lazy initialization).

        Created on first access and reused for the rest of the command.
        """
        if self._adapter is None:
            self._adapter = RestAdapter(self.settings, transport=self.transport)
        return self._adapter

    @property
    def progress(self) -> ProgressFactory:
        return progress_factory(self.silent)

    def close(self) -> None:
        if self._adapter is not None:
            self._adapter.close()
            self._adapter = None
