"""
UI Block Registry

Plugins contribute UI blocks to editor surfaces (post sidebar, page
toolbar, ...). The registry only selects and orders blocks for a surface;
rendering is left to the host's templates.
"""

from __future__ import annotations

import itertools
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from cms_core.exceptions import DuplicateIdentifierError, RegistrationClosedError

logger = logging.getLogger(__name__)


class BlockLocation(str, Enum):
    POST = "post"
    PAGE = "page"
    MEDIA = "media"
    USER = "user"
    DASHBOARD = "dashboard"


class BlockPosition(str, Enum):
    SIDEBAR = "sidebar"
    TOOLBAR = "toolbar"
    MAIN = "main"
    HEADER = "header"
    FOOTER = "footer"


@dataclass(frozen=True)
class UiBlockDefinition:
    plugin: str
    key: str
    label: str
    locations: tuple[BlockLocation, ...]
    position: BlockPosition
    render: str | Callable[..., Any]
    order: int = 100
    icon: str | None = None
    description: str = ""
    capability: str | None = None
    can_render: Callable[[dict[str, Any]], bool] | None = None
    sequence: int = field(default=0, compare=False)

    @property
    def identifier(self) -> str:
        return f"{self.plugin}.{self.key}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.identifier,
            "plugin": self.plugin,
            "key": self.key,
            "label": self.label,
            "description": self.description,
            "icon": self.icon,
            "locations": [loc.value for loc in self.locations],
            "position": self.position.value,
            "order": self.order,
            "template": self.render if isinstance(self.render, str) else None,
        }


class UiBlockRegistry:
    """
    Registry of plugin UI blocks.

    Args:
        authorize: Host capability check `(context, capability) -> bool`,
                   applied to blocks that declare a required capability.
        is_active: Plugin activity predicate, read on every selection.
    """

    def __init__(
        self,
        authorize: Callable[[dict[str, Any], str], bool] | None = None,
        is_active: Callable[[str], bool] | None = None,
    ):
        self.authorize = authorize
        self.is_active = is_active
        self._blocks: dict[tuple[str, str], UiBlockDefinition] = {}
        self._sequence = itertools.count()
        self._frozen = False

    def freeze(self) -> None:
        self._frozen = True

    def register_block(
        self,
        plugin: str,
        key: str,
        label: str | None = None,
        locations: tuple[str, ...] | list[str] = ("post", "page"),
        position: str = "sidebar",
        order: int = 100,
        render: str | Callable[..., Any] | None = None,
        can_render: Callable[[dict[str, Any]], bool] | None = None,
        capability: str | None = None,
        icon: str | None = None,
        description: str = "",
    ) -> UiBlockDefinition:
        if self._frozen:
            raise RegistrationClosedError("UiBlockRegistry")
        if (plugin, key) in self._blocks:
            raise DuplicateIdentifierError(f"{plugin}.{key}", kind="UI block")
        if render is None:
            raise ValueError(f"Block {plugin}.{key} needs a template path or render callable")
        if isinstance(locations, str):
            locations = (locations,)
        if not locations:
            raise ValueError(f"Block {plugin}.{key} needs at least one location")
        if can_render is not None and not callable(can_render):
            raise ValueError(f"can_render for block {plugin}.{key} is not callable")

        block = UiBlockDefinition(
            plugin=plugin,
            key=key,
            label=label or key.replace("_", " ").title(),
            locations=tuple(BlockLocation(loc) for loc in locations),
            position=BlockPosition(position),
            render=render,
            order=order,
            icon=icon,
            description=description,
            capability=capability,
            can_render=can_render,
            sequence=next(self._sequence),
        )
        self._blocks[(plugin, key)] = block
        logger.debug("UI block registered: %s", block.identifier)
        return block

    def get(self, plugin: str, key: str) -> UiBlockDefinition | None:
        return self._blocks.get((plugin, key))

    def all(self) -> list[UiBlockDefinition]:
        return sorted(self._blocks.values(), key=lambda b: (b.order, b.sequence))

    def _visible(self, block: UiBlockDefinition, context: dict[str, Any]) -> bool:
        if self.is_active is not None and not self.is_active(block.plugin):
            return False
        try:
            if block.capability and self.authorize is not None and not self.authorize(context, block.capability):
                return False
            return block.can_render is None or bool(block.can_render(context))
        except Exception:
            logger.exception("Visibility check failed for block %s; hiding it", block.identifier)
            return False

    def blocks_for(
        self,
        location: BlockLocation | str,
        context: dict[str, Any] | None = None,
        position: BlockPosition | str | None = None,
    ) -> list[UiBlockDefinition]:
        """Blocks to draw at `location`, ordered by `order` then registration order."""
        location = BlockLocation(location)
        position = BlockPosition(position) if position is not None else None
        context = context or {}
        return [
            block
            for block in self.all()
            if location in block.locations
            and (position is None or block.position is position)
            and self._visible(block, context)
        ]
