"""
Sample backend plugin for the live data source.

Provides the data, stream and resource service and the runner that publishes
its streams on the message broker.
"""

from plugin_backend.service import PluginService
from plugin_backend.runner import StreamRunner

__all__ = ["PluginService", "StreamRunner"]
