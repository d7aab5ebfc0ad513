"""
Plugin Base Classes

PluginDescriptor: immutable identity of a plugin (identifier, name, version).
PluginBase: abstract base class all plugins must subclass.
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from cms_core.plugins.context import PluginContext
    from cms_core.plugins.runtime import PluginRuntime
    from cms_core.plugins.settings_schema import PluginSettings

IDENTIFIER_PATTERN = re.compile(r"^[a-z][a-z0-9_]*$")


@dataclass(frozen=True)
class PluginDescriptor:
    """
    Declarative identity of a plugin.

    Attributes:
        identifier:  Stable lowercase slug, e.g. "seo". Namespace root for the
                     plugin's hooks, routes, settings, tasks and tables.
        name:        Human-readable name shown in the admin UI.
        version:     Semver string, e.g. "1.0.0".
        description: Human-readable description shown in admin UI.
        author:      Plugin author (defaults to "CMS Core Team").
    """

    identifier: str
    name: str
    version: str
    description: str = ""
    author: str = "CMS Core Team"
    license: str | None = None
    url: str | None = None

    def __post_init__(self) -> None:
        if not IDENTIFIER_PATTERN.match(self.identifier or ""):
            raise ValueError(
                f"Plugin identifier '{self.identifier}' must be a lowercase slug matching {IDENTIFIER_PATTERN.pattern}"
            )

    def to_dict(self) -> dict[str, str | None]:
        return {
            "identifier": self.identifier,
            "name": self.name,
            "version": self.version,
            "description": self.description,
            "author": self.author,
            "license": self.license,
            "url": self.url,
        }


class PluginBase(ABC):
    """
    Abstract base class for all CMS plugins.

    Subclasses must implement `descriptor` and `setup`. The lifecycle
    callbacks default to no-ops so subclasses only override what they need.
    """

    #: Bound by the registry once setup has succeeded
    settings: PluginSettings | None = None
    runtime: PluginRuntime | None = None

    @property
    @abstractmethod
    def descriptor(self) -> PluginDescriptor:
        """Return the plugin's descriptor."""
        ...

    @property
    def identifier(self) -> str:
        return self.descriptor.identifier

    @abstractmethod
    def setup(self, ctx: PluginContext) -> None:
        """
        Declare everything the plugin contributes.

        Called once at boot. Registrations made through `ctx` only take
        effect if this method returns without raising.
        """

    def check_requirements(self) -> list[str]:
        """
        Return the reasons this plugin cannot run here, or an empty list.

        Checked before every activation; a non-empty list blocks it.
        """
        return []

    async def on_activate(self) -> None:  # noqa: B027
        """Called after migrations have run and the plugin has been marked active."""

    async def on_deactivate(self) -> None:  # noqa: B027
        """Called after the plugin has been marked inactive and its tasks suspended."""

    async def before_uninstall(self) -> None:  # noqa: B027
        """
        Called before the plugin's tables, jobs and record are removed.

        Override to export or clean up data that lives outside the plugin's
        own tables.
        """

    def __repr__(self) -> str:
        d = self.descriptor
        return f"<{type(self).__name__} {d.identifier} {d.version}>"
