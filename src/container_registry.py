#!/usr/bin/env python3
"""
容器状态管理模块

维护运行中容器的内存映射，并根据容器事件增量更新防火墙规则。
本地状态与事件不一致时（例如错过事件），执行完整重新同步。
"""

import logging
import threading
from typing import Dict, List, Optional

from models import Container, ContainerEvent, ContainerQueryError, FirewallError


class ContainerRegistry:
    """运行中容器注册表

    runtime 需要提供 inspect(container_id) -> Container 和 list_running() -> List[str]，
    失败时抛出 ContainerQueryError。
    """

    def __init__(self, runtime, firewall_manager):
        self.runtime = runtime
        self.firewall_manager = firewall_manager
        self.logger = logging.getLogger(__name__)
        self._containers: Dict[str, Container] = {}
        self._lock = threading.Lock()

    def __len__(self):
        with self._lock:
            return len(self._containers)

    def __contains__(self, container_id: str):
        with self._lock:
            return container_id in self._containers

    def get(self, container_id: str) -> Optional[Container]:
        with self._lock:
            return self._containers.get(container_id)

    def container_ids(self) -> List[str]:
        with self._lock:
            return list(self._containers)

    def dispatch(self, event: ContainerEvent):
        """按事件状态分发"""
        if event.status == 'start':
            self.logger.debug(f"容器启动事件: {event.container_id}")
            self.on_start(event.container_id)
        elif event.status in ('die', 'stop'):
            self.logger.debug(f"容器停止事件: {event.container_id}")
            self.on_stop(event.container_id)

    def on_start(self, container_id: str):
        """处理容器启动事件"""
        self._lock.acquire()
        if container_id in self._containers:
            self._lock.release()
            self.logger.warning(f"容器 {container_id[:12]} 已在注册表中，状态不一致，重新同步")
            self._resync_quietly()
            return

        try:
            try:
                container = self.runtime.inspect(container_id)
            except ContainerQueryError as e:
                self.logger.info(f"无法获取容器信息 {container_id[:12]}，忽略: {e}")
                return

            self._containers[container_id] = container
            errors = self.firewall_manager.add_container_rules(container)
            if errors:
                self.logger.error(f"容器 {container} 有 {len(errors)} 条规则添加失败")
        finally:
            self._lock.release()

    def on_stop(self, container_id: str):
        """处理容器停止事件

        先删除规则再从注册表移除。删除失败或容器不在注册表中时重新同步。
        """
        with self._lock:
            if container_id in self._containers:
                try:
                    self.firewall_manager.remove_container_rules(container_id)
                    del self._containers[container_id]
                    return
                except FirewallError as e:
                    self.logger.error(f"删除容器 {container_id[:12]} 的规则失败: {e}")
            else:
                self.logger.info(f"容器 {container_id[:12]} 不在注册表中，重新同步")

        self._resync_quietly()

    def resync(self):
        """完整重新同步：重新获取所有运行中容器并重建防火墙

        列出容器失败时抛出ContainerQueryError，链创建失败时抛出FirewallError。
        单个容器的查询或规则添加失败只记录日志。
        """
        self.logger.info("重新同步容器列表")
        container_ids = self.runtime.list_running()

        with self._lock:
            containers = {}
            for container_id in container_ids:
                try:
                    containers[container_id] = self.runtime.inspect(container_id)
                except ContainerQueryError as e:
                    self.logger.error(f"获取容器信息失败 {container_id[:12]}: {e}")

            self._containers = containers
            self.logger.info(f"发现 {len(containers)} 个运行中的容器")
            self.firewall_manager.rebuild(list(containers.values()))

    def _resync_quietly(self):
        """事件处理中的重新同步，失败只记录"""
        try:
            self.resync()
        except (ContainerQueryError, FirewallError) as e:
            self.logger.error(f"重新同步失败: {e}")
