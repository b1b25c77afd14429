#!/usr/bin/env python3
"""
NodeSync - Shadowsocks 节点与 V2Board 面板同步程序
主程序入口：读取环境变量、启动同步控制器、（可选）状态 API
"""

import logging
import signal
import sys
import threading

from api import create_app
from config import Settings
from controller import RetryPolicy, SyncController
from database import TrafficSpool
from engine import load_engine
from errors import ConfigError, NodeSyncError
from panel import PanelClient

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(name)s: %(message)s'
)
logger = logging.getLogger('nodesync')


def build_controller(settings: Settings) -> SyncController:
    client = PanelClient(
        api_host=settings.api_host,
        node_id=settings.node_id,
        key=settings.node_key,
        timeout=settings.api_timeout,
        transport=settings.transport,
    )
    spool = None
    if settings.spool_path:
        spool = TrafficSpool(settings.spool_path)
        spool.init_schema()
    return SyncController(
        client=client,
        engine=load_engine(settings.engine),
        retry=RetryPolicy(
            max_attempts=settings.retry_attempts,
            base_delay=settings.retry_backoff,
            max_delay=settings.retry_max_backoff,
        ),
        sync_interval=settings.sync_interval,
        report_interval=settings.report_interval,
        final_report_timeout=settings.final_report_timeout,
        spool=spool,
    )


def start_status_api(controller: SyncController, host: str, port: int) -> threading.Thread:
    app = create_app(controller)
    thread = threading.Thread(
        target=app.run,
        kwargs={'host': host, 'port': port, 'debug': False, 'threaded': True, 'use_reloader': False},
        daemon=True,
        name='status-api',
    )
    thread.start()
    logger.info(f"Status API available at http://{host}:{port}/api/status")
    return thread


def main() -> int:
    try:
        settings = Settings.from_env()
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        return 2
    logging.getLogger().setLevel(settings.log_level)

    logger.info("=" * 50)
    logger.info("  NodeSync starting up")
    logger.info(f"  Panel     : {settings.api_host}")
    logger.info(f"  Node ID   : {settings.node_id}")
    logger.info(f"  Engine    : {settings.engine}")
    logger.info(f"  Spool     : {settings.spool_path or 'disabled'}")
    logger.info("=" * 50)

    try:
        controller = build_controller(settings)
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        return 2

    for sig in (signal.SIGINT, signal.SIGTERM):
        signal.signal(sig, lambda *_: controller.request_stop())

    if settings.status_port:
        start_status_api(controller, settings.status_host, settings.status_port)

    try:
        ok = controller.run()
    except NodeSyncError as e:
        logger.error(f"NodeSync stopped: {e}")
        return 1
    finally:
        controller.client.close()
    return 0 if ok else 1


if __name__ == '__main__':
    sys.exit(main())
