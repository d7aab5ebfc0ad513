"""
Custom Exception Classes for the CMS plugin runtime

This module defines the exceptions raised by the plugin registry, hook bus,
settings engine, route registrar, scheduler and webhook dispatcher, so that
the admin API can turn them into consistent error responses.
"""

from typing import Any

from fastapi import status


class CMSException(Exception):
    """Base exception class for all CMS-related exceptions"""

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


class PluginError(CMSException):
    """Base class for plugin runtime errors"""

    error_code = "PLUGIN_ERROR"


# ============================================================================
# Registration Exceptions
# ============================================================================


class DuplicateIdentifierError(PluginError):
    """Raised when a plugin, block or task is registered twice under one key"""

    error_code = "PLUGIN_DUPLICATE_IDENTIFIER"

    def __init__(self, identifier: str, kind: str = "Plugin"):
        self.identifier = identifier
        super().__init__(
            message=f"{kind} '{identifier}' is already registered",
            status_code=status.HTTP_409_CONFLICT,
            details={"identifier": identifier, "kind": kind},
        )


class DuplicateFieldKeyError(PluginError):
    """Raised when a setup call defines the same setting key twice"""

    error_code = "PLUGIN_DUPLICATE_FIELD_KEY"

    def __init__(self, plugin: str, key: str):
        self.plugin = plugin
        self.key = key
        super().__init__(
            message=f"Setting '{key}' is defined twice by plugin '{plugin}'",
            details={"plugin": plugin, "key": key},
        )


class RegistrationClosedError(PluginError):
    """Raised when something tries to register after boot has frozen the registries"""

    error_code = "PLUGIN_REGISTRATION_CLOSED"

    def __init__(self, component: str):
        super().__init__(
            message=f"{component} is frozen; registrations are only accepted during setup",
            details={"component": component},
        )


class InvalidRouteError(PluginError):
    """Raised when a plugin route path would escape its namespace"""

    error_code = "PLUGIN_INVALID_ROUTE"

    def __init__(self, plugin: str, path: str, reason: str):
        super().__init__(
            message=f"Invalid route '{path}' for plugin '{plugin}': {reason}",
            details={"plugin": plugin, "path": path, "reason": reason},
        )


class RouteCollisionError(PluginError):
    """Raised when two contributions resolve to the same method and absolute path"""

    error_code = "PLUGIN_ROUTE_COLLISION"

    def __init__(self, method: str, path: str, owners: list[str]):
        self.method = method
        self.path = path
        self.owners = owners
        super().__init__(
            message=f"Route collision on {method} {path} between {', '.join(owners)}",
            details={"method": method, "path": path, "owners": owners},
        )


class InvalidScheduleError(PluginError):
    """Raised when a scheduled task has an unparseable cron expression"""

    error_code = "PLUGIN_INVALID_SCHEDULE"

    def __init__(self, plugin: str, name: str, expression: str):
        super().__init__(
            message=f"Invalid cron expression '{expression}' for task '{plugin}:{name}'",
            details={"plugin": plugin, "task": name, "expression": expression},
        )


# ============================================================================
# Settings Exceptions
# ============================================================================


class ValidationError(PluginError):
    """Raised when a setting value violates its field definition"""

    error_code = "PLUGIN_SETTING_INVALID"

    def __init__(
        self,
        field: str,
        reason: str,
        message: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.field = field
        self.reason = reason
        error_details = details or {}
        error_details.update({"field": field, "reason": reason})
        super().__init__(
            message=message or f"Invalid value for '{field}': {reason}",
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details=error_details,
        )


# ============================================================================
# Lifecycle Exceptions
# ============================================================================


class PluginNotFoundError(PluginError):
    """Raised when an identifier does not name a registered plugin"""

    error_code = "PLUGIN_NOT_FOUND"

    def __init__(self, identifier: str):
        super().__init__(
            message=f"Plugin '{identifier}' not found",
            status_code=status.HTTP_404_NOT_FOUND,
            details={"identifier": identifier},
        )


class PluginStateError(PluginError):
    """Raised when a lifecycle transition is not allowed from the current state"""

    error_code = "PLUGIN_INVALID_STATE"

    def __init__(self, identifier: str, current_state: str, action: str):
        super().__init__(
            message=f"Cannot {action} plugin '{identifier}' while it is {current_state}",
            status_code=status.HTTP_409_CONFLICT,
            details={"identifier": identifier, "current_state": current_state, "action": action},
        )


class PluginActivationError(PluginError):
    """Raised when a plugin's own activation callback fails"""

    error_code = "PLUGIN_ACTIVATION_FAILED"

    def __init__(self, identifier: str, reason: str):
        self.identifier = identifier
        super().__init__(
            message=f"Plugin '{identifier}' failed to activate: {reason}",
            details={"identifier": identifier, "reason": reason},
        )


class MigrationFailureError(PluginError):
    """Raised when a plugin-private schema migration or table drop fails"""

    error_code = "PLUGIN_MIGRATION_FAILED"

    def __init__(self, identifier: str, version: int | None, reason: str):
        self.identifier = identifier
        self.version = version
        super().__init__(
            message=f"Migration for plugin '{identifier}' failed at version {version}: {reason}",
            details={"identifier": identifier, "version": version, "reason": reason},
        )


# ============================================================================
# Delivery Exceptions
# ============================================================================


class WebhookDeliveryError(PluginError):
    """Terminal webhook failure; reported through the '<plugin>.webhook_failed' action, never raised"""

    error_code = "PLUGIN_WEBHOOK_FAILED"

    def __init__(self, url: str, attempts: int, reason: str, status_code: int | None = None):
        self.url = url
        self.attempts = attempts
        self.reason = reason
        self.response_status = status_code
        super().__init__(
            message=f"Webhook delivery to {url} failed after {attempts} attempt(s): {reason}",
            status_code=status.HTTP_502_BAD_GATEWAY,
            details={"url": url, "attempts": attempts, "reason": reason, "response_status": status_code},
        )
