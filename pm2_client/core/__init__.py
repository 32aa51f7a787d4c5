"""
Core functionality for the PM2 client agent.
"""
from pm2_client.core.agent_state import AgentState, ConnectionState
from pm2_client.core.models import ActionKind, RemoteCommand
from pm2_client.core.command_executor import Pm2CommandExecutor
from pm2_client.core.action_queue import ActionQueue
from pm2_client.core.agent import Agent

__all__ = [
    'AgentState',
    'ConnectionState',
    'ActionKind',
    'RemoteCommand',
    'Pm2CommandExecutor',
    'ActionQueue',
    'Agent'
]
