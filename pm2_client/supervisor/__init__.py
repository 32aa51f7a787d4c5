"""
Process supervisor access for the PM2 client agent.
"""
from pm2_client.supervisor.pm2_api import Pm2Client

__all__ = [
    'Pm2Client'
]
