"""
Settings Schema Engine

Plugins declare typed settings during setup; the resulting schema is the
single source of truth for both validating writes and generating the admin
settings form, so no plugin ships a hand-written form.

Values live in the plugin's PluginRecord.settings blob and are validated on
every write. A rejected write never reaches the store.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any
from urllib.parse import urlparse

from cms_core.exceptions import DuplicateFieldKeyError, DuplicateIdentifierError, RegistrationClosedError, ValidationError

if TYPE_CHECKING:
    from cms_core.services.plugin_store import PluginStore

logger = logging.getLogger(__name__)

DEFAULT_SECTION = "General"

_TRUE_STRINGS = {"true", "1", "yes", "on"}
_FALSE_STRINGS = {"false", "0", "no", "off"}


class FieldType(str, Enum):
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    SELECT = "select"
    TEXT = "text"
    URL = "url"


# Admin form widget per field type
INPUT_TYPES: dict[FieldType, str] = {
    FieldType.STRING: "text",
    FieldType.NUMBER: "number",
    FieldType.BOOLEAN: "checkbox",
    FieldType.SELECT: "select",
    FieldType.TEXT: "textarea",
    FieldType.URL: "url",
}


def _is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


@dataclass(frozen=True)
class SettingField:
    """One typed, validated setting of a plugin."""

    plugin: str
    key: str
    type: FieldType
    label: str
    description: str | None = None
    default: Any = None
    required: bool = False
    min: float | None = None
    max: float | None = None
    choices: tuple[tuple[Any, str], ...] = ()
    pattern: str | None = None
    placeholder: str | None = None
    rows: int | None = None
    section: str = DEFAULT_SECTION

    @property
    def qualified_key(self) -> str:
        return f"{self.plugin}.{self.key}"

    @property
    def input_type(self) -> str:
        return INPUT_TYPES[self.type]

    def _fail(self, reason: str, message: str) -> ValidationError:
        return ValidationError(field=self.key, reason=reason, message=message)

    def validate(self, value: Any) -> Any:
        """
        Check `value` against this field and return the coerced value.

        Empty input (None or a blank string) clears the setting and returns
        None, unless the field is required.

        Raises:
            ValidationError: with `reason` one of required, type, min, max,
                             choice, url, pattern.
        """
        if _is_empty(value):
            if self.required:
                raise self._fail("required", f"{self.label} is required")
            return None

        if self.type is FieldType.NUMBER:
            return self._check_range(self._coerce_number(value))
        if self.type is FieldType.BOOLEAN:
            return self._coerce_boolean(value)
        if self.type is FieldType.SELECT:
            return self._coerce_choice(value)

        if not isinstance(value, str):
            raise self._fail("type", f"{self.label} must be text")
        if self.type is not FieldType.TEXT:
            value = value.strip()
        if self.type is FieldType.URL:
            parsed = urlparse(value)
            if parsed.scheme not in ("http", "https") or not parsed.netloc:
                raise self._fail("url", f"{self.label} must be an absolute http(s) URL")
        if self.min is not None and len(value) < self.min:
            raise self._fail("min", f"{self.label} must be at least {self.min:g} characters")
        if self.max is not None and len(value) > self.max:
            raise self._fail("max", f"{self.label} must be at most {self.max:g} characters")
        if self.pattern and not re.fullmatch(self.pattern, value):
            raise self._fail("pattern", f"{self.label} format is invalid")
        return value

    def _coerce_number(self, value: Any) -> int | float:
        if isinstance(value, bool):
            raise self._fail("type", f"{self.label} must be a number")
        if isinstance(value, (int, float)):
            number = value
        elif isinstance(value, str):
            text = value.strip()
            try:
                number = int(text)
            except ValueError:
                try:
                    number = float(text)
                except ValueError:
                    raise self._fail("type", f"{self.label} must be a number") from None
        else:
            raise self._fail("type", f"{self.label} must be a number")
        if isinstance(number, float) and not math.isfinite(number):
            raise self._fail("type", f"{self.label} must be a finite number")
        return number

    def _check_range(self, number: int | float) -> int | float:
        if self.min is not None and number < self.min:
            raise self._fail("min", f"{self.label} must be at least {self.min:g}")
        if self.max is not None and number > self.max:
            raise self._fail("max", f"{self.label} must be at most {self.max:g}")
        return number

    def _coerce_boolean(self, value: Any) -> bool:
        if isinstance(value, bool):
            return value
        if isinstance(value, int) and value in (0, 1):
            return bool(value)
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in _TRUE_STRINGS:
                return True
            if lowered in _FALSE_STRINGS:
                return False
        raise self._fail("type", f"{self.label} must be true or false")

    def _coerce_choice(self, value: Any) -> Any:
        for choice, _label in self.choices:
            if value == choice or str(value) == str(choice):
                return choice
        allowed = ", ".join(str(c) for c, _ in self.choices)
        raise self._fail("choice", f"{self.label} must be one of: {allowed}")

    def render_options(self) -> dict[str, Any]:
        """Widget description consumed by the admin form generator."""
        options: dict[str, Any] = {
            "key": self.key,
            "type": self.type.value,
            "input_type": self.input_type,
            "label": self.label,
            "description": self.description,
            "required": self.required,
            "default": self.default,
            "placeholder": self.placeholder,
            "min": self.min,
            "max": self.max,
            "pattern": self.pattern,
        }
        if self.type is FieldType.SELECT:
            options["choices"] = [{"value": v, "label": label} for v, label in self.choices]
        if self.type is FieldType.TEXT:
            options["rows"] = self.rows or 4
        return {k: v for k, v in options.items() if v is not None}


@dataclass
class SettingSection:
    title: str
    description: str | None = None
    fields: list[SettingField] = field(default_factory=list)


def _normalise_choices(choices: Any) -> tuple[tuple[Any, str], ...]:
    normalised = []
    for choice in choices or ():
        if isinstance(choice, (tuple, list)) and len(choice) == 2:
            normalised.append((choice[0], str(choice[1])))
        else:
            normalised.append((choice, str(choice)))
    return tuple(normalised)


class SettingsSchema:
    """The ordered, sectioned settings declared by one plugin."""

    def __init__(self, plugin: str):
        self.plugin = plugin
        self.sections: list[SettingSection] = []
        self._fields: dict[str, SettingField] = {}
        self._frozen = False

    def freeze(self) -> None:
        self._frozen = True

    def _check_open(self) -> None:
        if self._frozen:
            raise RegistrationClosedError(f"Settings schema for '{self.plugin}'")

    def section(self, title: str, description: str | None = None) -> SettingSection:
        self._check_open()
        for existing in self.sections:
            if existing.title == title:
                if description and not existing.description:
                    existing.description = description
                return existing
        section = SettingSection(title=title, description=description)
        self.sections.append(section)
        return section

    def define_field(
        self,
        key: str,
        type: FieldType | str = FieldType.STRING,
        label: str | None = None,
        *,
        section: str | None = None,
        description: str | None = None,
        default: Any = None,
        required: bool = False,
        min: float | None = None,
        max: float | None = None,
        choices: Any = None,
        pattern: str | None = None,
        placeholder: str | None = None,
        rows: int | None = None,
    ) -> SettingField:
        self._check_open()
        key = str(key)
        if key in self._fields:
            raise DuplicateFieldKeyError(self.plugin, key)
        try:
            field_type = FieldType(type)
        except ValueError:
            raise ValueError(f"Unknown setting type '{type}' for {self.plugin}.{key}") from None
        if field_type is FieldType.SELECT and not choices:
            raise ValueError(f"Select setting {self.plugin}.{key} needs choices")

        setting = SettingField(
            plugin=self.plugin,
            key=key,
            type=field_type,
            label=label or key.replace("_", " ").title(),
            description=description,
            default=default,
            required=required,
            min=min,
            max=max,
            choices=_normalise_choices(choices),
            pattern=pattern,
            placeholder=placeholder,
            rows=rows,
            section=section or DEFAULT_SECTION,
        )
        self.section(setting.section).fields.append(setting)
        self._fields[key] = setting
        return setting

    def field(self, key: str) -> SettingField | None:
        return self._fields.get(key)

    def fields(self) -> list[SettingField]:
        return list(self._fields.values())

    def __contains__(self, key: str) -> bool:
        return key in self._fields

    def __len__(self) -> int:
        return len(self._fields)

    def validate(self, values: dict[str, Any]) -> tuple[dict[str, Any], dict[str, ValidationError]]:
        """Validate a batch; returns (coerced values, errors by key)."""
        cleaned: dict[str, Any] = {}
        errors: dict[str, ValidationError] = {}
        for key, value in values.items():
            setting = self._fields.get(key)
            if setting is None:
                errors[key] = ValidationError(field=key, reason="unknown", message=f"Unknown setting '{key}'")
                continue
            try:
                cleaned[key] = setting.validate(value)
            except ValidationError as exc:
                errors[key] = exc
        return cleaned, errors


class SettingsSchemaEngine:
    """
    Holds every plugin's schema and mediates reads/writes of setting values.

    Schemas are registered at boot and frozen afterwards; values stay
    writable at runtime through the store's per-row transactions.
    """

    def __init__(self, store: PluginStore):
        self.store = store
        self._schemas: dict[str, SettingsSchema] = {}
        self._frozen = False

    def register_schema(self, schema: SettingsSchema) -> None:
        if self._frozen:
            raise RegistrationClosedError("SettingsSchemaEngine")
        if schema.plugin in self._schemas:
            raise DuplicateIdentifierError(schema.plugin, kind="Settings schema")
        self._schemas[schema.plugin] = schema
        logger.debug("Settings schema registered for %s (%d fields)", schema.plugin, len(schema))

    def freeze(self) -> None:
        self._frozen = True
        for schema in self._schemas.values():
            schema.freeze()

    def schema_for(self, plugin: str) -> SettingsSchema:
        schema = self._schemas.get(plugin)
        return schema if schema is not None else SettingsSchema(plugin)

    async def get_value(self, plugin: str, key: str, default: Any = None) -> Any:
        """Persisted value, else the schema default, else `default`."""
        record = await self.store.get(plugin)
        stored = (record.settings or {}) if record is not None else {}
        if stored.get(key) is not None:
            return stored[key]
        setting = self.schema_for(plugin).field(key)
        if setting is not None and setting.default is not None:
            return setting.default
        return default

    async def set_value(self, plugin: str, key: str, value: Any) -> Any:
        """Validate and persist one setting; returns the stored (coerced) value."""
        setting = self.schema_for(plugin).field(key)
        if setting is None:
            raise ValidationError(field=key, reason="unknown", message=f"Unknown setting '{key}'")
        cleaned = setting.validate(value)
        await self.store.put_settings(plugin, {key: cleaned})
        logger.info("Setting updated: %s", setting.qualified_key)
        return cleaned

    async def set_values(self, plugin: str, values: dict[str, Any]) -> dict[str, Any]:
        """Validate a batch and persist all of it, or none of it."""
        cleaned, errors = self.schema_for(plugin).validate(values)
        if errors:
            first = next(iter(errors.values()))
            raise ValidationError(
                field=first.field,
                reason=first.reason,
                message=first.message,
                details={"errors": {key: exc.reason for key, exc in errors.items()}},
            )
        if cleaned:
            await self.store.put_settings(plugin, cleaned)
            logger.info("Settings updated for %s: %s", plugin, ", ".join(sorted(cleaned)))
        return cleaned

    async def values(self, plugin: str) -> dict[str, Any]:
        """Effective value of every declared field."""
        record = await self.store.get(plugin)
        stored = (record.settings or {}) if record is not None else {}
        result = {}
        for setting in self.schema_for(plugin).fields():
            value = stored.get(setting.key)
            result[setting.key] = value if value is not None else setting.default
        return result

    async def form(self, plugin: str) -> dict[str, Any]:
        """Admin form layout generated from the schema, with current values."""
        current = await self.values(plugin)
        return {
            "plugin": plugin,
            "sections": [
                {
                    "title": section.title,
                    "description": section.description,
                    "fields": [{**f.render_options(), "value": current.get(f.key)} for f in section.fields],
                }
                for section in self.schema_for(plugin).sections
            ],
        }

    def bind(self, plugin: str) -> PluginSettings:
        return PluginSettings(self, plugin)


class PluginSettings:
    """Settings facade bound to one plugin identifier."""

    def __init__(self, engine: SettingsSchemaEngine, plugin: str):
        self._engine = engine
        self.plugin = plugin

    async def get(self, key: str, default: Any = None) -> Any:
        return await self._engine.get_value(self.plugin, key, default)

    async def set(self, key: str, value: Any) -> Any:
        return await self._engine.set_value(self.plugin, key, value)

    async def update(self, values: dict[str, Any]) -> dict[str, Any]:
        return await self._engine.set_values(self.plugin, values)

    async def all(self) -> dict[str, Any]:
        return await self._engine.values(self.plugin)

    async def enabled(self, key: str) -> bool:
        return bool(await self.get(key, False))
