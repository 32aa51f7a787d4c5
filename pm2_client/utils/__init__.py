"""
Utility functions for the PM2 client agent.
"""
from pm2_client.utils.logger import get_logger, setup_logger
from pm2_client.utils.timers import RepeatingTimer

__all__ = [
    'get_logger',
    'setup_logger',
    'RepeatingTimer'
]
