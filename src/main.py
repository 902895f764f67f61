#!/usr/bin/env python3
"""
Docker Port Forwarder
根据运行中的容器自动维护iptables NAT端口转发规则
"""

import sys
import argparse
import signal
import logging
import threading

from docker.errors import DockerException
import requests

from config import Config
from container_registry import ContainerRegistry
from docker_monitor import DockerMonitor
from firewall_manager import FirewallManager
from models import PortForwarderError
import health


class PortForwarderService:
    """主服务类"""

    def __init__(self, config: Config):
        self.config = config
        self.setup_logging()
        self.firewall_manager = FirewallManager(self.config)
        self.docker_monitor = DockerMonitor(self.config)
        self.registry = ContainerRegistry(self.docker_monitor, self.firewall_manager)
        self.running = False

    def setup_logging(self):
        """设置日志"""
        handlers = [logging.StreamHandler(sys.stdout)]
        if self.config.log_file:
            handlers.append(logging.FileHandler(self.config.log_file))
        logging.basicConfig(
            level=getattr(logging, self.config.log_level.upper()),
            format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            handlers=handlers
        )
        self.logger = logging.getLogger(__name__)

    def signal_handler(self, signum, frame):
        """信号处理器"""
        self.logger.info(f"收到信号 {signum}，正在停止服务...")
        self.stop()

    def resync_handler(self, signum, frame):
        """SIGHUP：在后台线程中重新同步"""
        self.logger.info("收到重新同步信号")
        threading.Thread(target=self._resync_in_background, daemon=True).start()

    def _resync_in_background(self):
        try:
            self.registry.resync()
        except PortForwarderError as e:
            self.logger.error(f"重新同步失败: {e}")

    def start(self):
        """启动服务"""
        self.logger.info("启动 Docker Port Forwarder")

        signal.signal(signal.SIGTERM, self.signal_handler)
        signal.signal(signal.SIGINT, self.signal_handler)
        signal.signal(signal.SIGHUP, self.resync_handler)

        try:
            self.docker_monitor.connect()
        except (DockerException, requests.exceptions.RequestException) as e:
            self.logger.error(f"无法连接Docker: {e}")
            sys.exit(1)

        # 先开始监听事件再做初始同步，避免遗漏两者之间的事件
        self.running = True
        self.docker_monitor.start(self.registry.dispatch, on_reconnect=self._resync_in_background)

        try:
            self.registry.resync()
        except PortForwarderError as e:
            self.logger.error(f"初始同步失败: {e}")
            self.stop()
            sys.exit(1)

        if self.running:
            self.logger.info(f"服务启动成功，存活检查端口 {self.config.http_port}")
            health.serve(self.registry, self.config.http_port, self.config.log_level)
        self.stop()

    def stop(self):
        """停止服务，防火墙规则保持不变"""
        if not self.running:
            return
        self.running = False
        self.docker_monitor.stop()
        self.logger.info("服务已停止")


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description='根据运行中的Docker容器维护iptables端口转发规则')
    parser.add_argument('--socket', '-s', default=None,
                        help='Docker socket地址 (默认 unix:///var/run/docker.sock)')
    parser.add_argument('--config', '-c', default=Config.config_file,
                        help='配置文件路径')
    return parser.parse_args(argv)


def main(argv=None):
    """主函数"""
    args = parse_args(argv)
    config = Config(config_file=args.config)
    if args.socket:
        config.docker_socket = args.socket

    if not config.is_valid():
        print("配置验证失败:", file=sys.stderr)
        for error in config.get_validation_errors():
            print(f"  - {error}", file=sys.stderr)
        return 1

    service = PortForwarderService(config)
    service.start()
    return 0


if __name__ == "__main__":
    sys.exit(main())
