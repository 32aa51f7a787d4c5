"""
Communication components for the PM2 client agent.
"""
from pm2_client.communication.ws_client import WSClient, decode_actions

__all__ = [
    'WSClient',
    'decode_actions'
]
