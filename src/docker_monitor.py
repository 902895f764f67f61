#!/usr/bin/env python3
"""
Docker容器监控模块
"""

import docker
from docker.errors import DockerException
import logging
import requests
import threading
import time
from typing import Any, Callable, Dict, List, Optional

from models import Container, ContainerEvent, ContainerQueryError, PortBinding, parse_container_name

RECONNECT_DELAY = 5


class DockerMonitor:
    """Docker容器监控器

    同时为ContainerRegistry提供 inspect/list_running 查询。
    """

    def __init__(self, config):
        self.config = config
        self.logger = logging.getLogger(__name__)
        self.client = None
        self.monitor_thread = None
        self.running = False
        self._handler: Optional[Callable[[ContainerEvent], None]] = None
        self._on_reconnect: Optional[Callable[[], None]] = None

    def connect(self):
        """连接Docker，失败时抛出异常"""
        self.client = docker.DockerClient(base_url=self.config.docker_socket)
        self.client.ping()  # 测试连接
        self.logger.info("Docker连接成功")

    def start(self, handler: Callable[[ContainerEvent], None],
              on_reconnect: Optional[Callable[[], None]] = None):
        """启动事件监控线程

        handler 按顺序处理每个容器事件；on_reconnect 在事件流断开并重连后调用，
        因为断开期间可能错过事件。
        """
        if self.client is None:
            self.connect()

        self._handler = handler
        self._on_reconnect = on_reconnect
        self.running = True
        self.monitor_thread = threading.Thread(target=self._monitor_events)
        self.monitor_thread.daemon = True
        self.monitor_thread.start()
        self.logger.info("Docker监控已启动")

    def stop(self):
        """停止监控"""
        self.running = False
        if self.client:
            self.client.close()
        if self.monitor_thread:
            self.monitor_thread.join(timeout=5)
        self.logger.info("Docker监控已停止")

    def _monitor_events(self):
        """监控Docker事件，事件流断开时重连"""
        self.logger.info("开始监控Docker事件")

        while self.running:
            try:
                for raw_event in self.client.events(decode=True, filters={'type': 'container'}):
                    if not self.running:
                        break
                    self._handle_event(raw_event)
            except Exception as e:
                # 连接断开时 urllib3 的 ProtocolError、StreamParseError 等都不是 DockerException
                if not self.running:
                    break
                self.logger.error(f"监控Docker事件失败: {e}")
            else:
                if not self.running:
                    break
                self.logger.warning("Docker事件流已结束")

            time.sleep(RECONNECT_DELAY)
            if self.running and self._reconnect() and self._on_reconnect:
                self._on_reconnect()

    def _reconnect(self) -> bool:
        """重新连接Docker"""
        try:
            self.client.close()
            self.connect()
            self.logger.info("Docker重新连接成功")
            return True
        except Exception as e:
            self.logger.error(f"Docker重新连接失败: {e}")
            return False

    def _handle_event(self, raw_event: Dict[str, Any]):
        """把原始事件转换为ContainerEvent并交给处理器"""
        event = ContainerEvent.from_docker(raw_event)
        if event is None:
            return
        self.logger.debug(f"收到事件: {event.status} {event.container_id[:12]}")
        self._handler(event)

    def list_running(self) -> List[str]:
        """列出所有运行中容器的ID"""
        try:
            containers = self.client.api.containers()
        except (DockerException, requests.exceptions.RequestException) as e:
            raise ContainerQueryError(f"无法列出容器: {e}") from e
        return [c['Id'] for c in containers]

    def inspect(self, container_id: str) -> Container:
        """获取容器详细信息"""
        try:
            inspect_data = self.client.api.inspect_container(container_id)
        except (DockerException, requests.exceptions.RequestException) as e:
            raise ContainerQueryError(f"获取容器信息失败 {container_id[:12]}: {e}") from e
        return self._container_from_inspect(inspect_data)

    def _container_from_inspect(self, inspect_data: Dict[str, Any]) -> Container:
        """从inspect数据构建Container"""
        network_settings = inspect_data.get('NetworkSettings') or {}
        return Container(
            id=inspect_data['Id'],
            name=parse_container_name(inspect_data.get('Name', '')),
            address=self._extract_address(network_settings),
            port_bindings=self._extract_port_bindings(network_settings.get('Ports') or {}),
        )

    def _extract_address(self, network_settings: Dict[str, Any]) -> str:
        """容器内部IPv4地址

        默认bridge网络的地址在 NetworkSettings.IPAddress；自定义网络只出现在
        NetworkSettings.Networks 中，取第一个有地址的网络。
        """
        address = network_settings.get('IPAddress')
        if address:
            return address
        for network_info in (network_settings.get('Networks') or {}).values():
            if network_info and network_info.get('IPAddress'):
                return network_info['IPAddress']
        return ''

    def _extract_port_bindings(self, network_ports: Dict[str, Any]) -> Dict[str, tuple]:
        """提取端口绑定（NetworkSettings.Ports），忽略未发布的端口"""
        result = {}
        for port_spec, bindings in network_ports.items():
            parsed = []
            for binding in bindings or []:
                try:
                    host_port = int(binding.get('HostPort') or 0)
                except (TypeError, ValueError):
                    self.logger.warning(f"无法解析端口绑定 {port_spec}: {binding}")
                    continue
                if host_port > 0:
                    parsed.append(PortBinding(host_ip=binding.get('HostIp') or '', host_port=host_port))
            if parsed:
                result[port_spec] = tuple(parsed)
        return result
