"""
Main entry point for the PM2 client agent.

Parses command-line arguments, loads configuration, wires the components
together and runs until SIGINT or SIGTERM.
"""
import argparse
import json
import signal
import sys
from typing import List, Optional

from pm2_client.communication import WSClient
from pm2_client.config import ConfigManager
from pm2_client.core import ActionQueue, Agent, Pm2CommandExecutor
from pm2_client.monitoring import SystemMonitor
from pm2_client.supervisor import Pm2Client
from pm2_client.utils.logger import PACKAGE_LOGGER_NAME, get_logger, setup_logger
from pm2_client.version import __app_name__, __version__

logger = get_logger("pm2_client.main")


def build_agent(config: ConfigManager) -> Agent:
    """
    Creates every component from the configuration.

    :param config: Loaded configuration
    :type config: ConfigManager
    :return: An agent ready to start
    :rtype: Agent
    """
    pm2 = Pm2Client(
        binary=config.get('pm2.binary', 'pm2'),
        timeout=config.get('pm2.command_timeout_sec', 30),
    )
    system_monitor = SystemMonitor(
        pm2=pm2,
        ipinfo_url=config.get('telemetry.ipinfo_url'),
        ipinfo_timeout=config.get('telemetry.ipinfo_timeout_sec', 5),
    )
    executor = Pm2CommandExecutor(pm2, self_id=config.get('agent.self_id'))
    action_queue = ActionQueue(
        executor,
        max_size=config.get('action_queue.max_size', 10),
        delay=config.get('action_queue.delay_sec', 0.5),
    )
    ws_client = WSClient(
        config.get('server_url'),
        action_queue,
        status_provider=lambda: system_monitor.collect_snapshot().to_message(),
        publish_interval=config.get('agent.publish_interval_sec', 1.0),
        reconnect_delay=config.get('websocket.reconnect_delay_sec', 5.0),
    )
    return Agent(pm2, system_monitor, action_queue, ws_client)


def _parse_args(argv: Optional[List[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="pm2-client", description=f"{__app_name__} {__version__}")
    parser.add_argument('--config', help='Path to a JSON configuration file.')
    parser.add_argument('--server-url', help='Controller WebSocket URL (overrides configuration).')
    parser.add_argument('--log-level', help='Console log level (DEBUG, INFO, WARNING, ERROR).')
    parser.add_argument('--log-file', help='Also write logs to this file (rotated).')
    parser.add_argument('--version', action='version', version=f"%(prog)s {__version__}")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    """
    Runs the agent until a termination signal arrives.

    :return: Process exit code
    :rtype: int
    """
    args = _parse_args(argv)

    try:
        config = ConfigManager(args.config, overrides={
            'server_url': args.server_url,
            'logging.level': args.log_level,
            'logging.file': args.log_file,
        })
    except (OSError, ValueError) as e:
        logger.critical(f"Could not load configuration: {e}")
        return 1

    setup_logger(
        PACKAGE_LOGGER_NAME,
        console_level_name=config.get('logging.level', 'INFO'),
        log_file_path=config.get('logging.file'),
        force=True,
    )
    logger.info(f"{__app_name__} {__version__}")
    logger.info(f"Configuration: {json.dumps(config.all_config, default=str)}")

    agent = build_agent(config)

    def _handle_signal(signum, frame):
        logger.info(f"Received {signal.Signals(signum).name}.")
        agent.graceful_shutdown()
        sys.exit(0)

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    agent.start()
    while not agent.wait(timeout=1.0):
        pass
    return 0


if __name__ == '__main__':
    sys.exit(main())
