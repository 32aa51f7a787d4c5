"""
PM2 Client Agent

Publishes host and PM2 process telemetry to a controller over a WebSocket and
executes the lifecycle actions the controller sends back.

Main components:
- Agent: Orchestrates startup and shutdown
- WSClient: Reconnecting controller connection and status publisher
- ActionQueue: Bounded, serial queue of remote actions
- Pm2CommandExecutor: Runs actions against PM2, refusing to stop itself
- SystemMonitor: Host and process telemetry
- Pm2Client: Access to the PM2 supervisor
- ConfigManager: Agent configuration
"""

from .version import __version__, __app_name__

from .core import Agent, AgentState, ConnectionState, ActionQueue, Pm2CommandExecutor, RemoteCommand
from .config import ConfigManager
from .communication import WSClient
from .monitoring import SystemMonitor
from .supervisor import Pm2Client

__all__ = [
    '__version__',
    '__app_name__',

    'Agent',
    'AgentState',
    'ConnectionState',
    'ActionQueue',
    'Pm2CommandExecutor',
    'RemoteCommand',

    'ConfigManager',

    'WSClient',

    'SystemMonitor',
    'Pm2Client'
]
