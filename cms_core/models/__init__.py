from .plugin_record import PluginRecord

__all__ = [
    "PluginRecord",
]
