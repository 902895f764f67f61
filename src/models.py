#!/usr/bin/env python3
"""
数据模型与解析函数
"""

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, Mapping, Optional, Tuple

SHORT_ID_LENGTH = 12
ANY_ADDRESS = "0.0.0.0/0"


class PortForwarderError(Exception):
    """基础异常"""


class ContainerQueryError(PortForwarderError):
    """Docker查询失败（容器不存在、连接错误等）"""


class FirewallError(PortForwarderError):
    """iptables命令执行失败"""


@dataclass(frozen=True)
class PortBinding:
    """容器端口在宿主机上的一个发布地址"""
    host_ip: str
    host_port: int


@dataclass(frozen=True)
class Container:
    """运行中的容器

    port_bindings 的键是 "端口/协议"（例如 "80/tcp"），值是该端口的所有宿主机绑定。
    记录创建后不再修改，容器变化时整体重新获取。port_bindings 保存为只读映射，
    因此记录不可哈希。
    """
    id: str
    name: str
    address: str = ""
    port_bindings: Mapping[str, Tuple[PortBinding, ...]] = field(default_factory=dict)

    __hash__ = None

    def __post_init__(self):
        bindings = {key: tuple(value) for key, value in self.port_bindings.items()}
        object.__setattr__(self, 'port_bindings', MappingProxyType(bindings))

    @property
    def short_id(self) -> str:
        return short_id(self.id)

    def __str__(self):
        return f"{self.name}[{self.short_id}]"


@dataclass(frozen=True)
class ForwardingRule:
    """转发规则：把宿主机端口经指定链转发到同名容器"""
    host_port: int
    chain: str
    host_ip: str = ""

    @property
    def destination(self) -> str:
        return self.host_ip or ANY_ADDRESS

    def __str__(self):
        return f"{self.destination}:{self.host_port} -> {self.chain}"


@dataclass(frozen=True)
class ContainerEvent:
    """容器生命周期事件"""
    container_id: str
    status: str

    @classmethod
    def from_docker(cls, event: Dict) -> Optional["ContainerEvent"]:
        """从Docker事件字典构建，非容器事件或缺少ID时返回None

        旧版API使用 id/status 字段，新版API只提供 Actor.ID/Action。
        """
        event_type = event.get('Type')
        if event_type and event_type != 'container':
            return None

        container_id = event.get('id') or (event.get('Actor') or {}).get('ID')
        status = event.get('status') or event.get('Action')
        if not container_id or not status:
            return None
        return cls(container_id=container_id, status=status)


def short_id(container_id: str) -> str:
    """容器短ID（前12个字符），用于规则注释标记"""
    if len(container_id) < SHORT_ID_LENGTH:
        raise ValueError(f"容器ID过短: {container_id!r}")
    return container_id[:SHORT_ID_LENGTH]


def parse_container_name(raw_name: str) -> str:
    """去掉Docker在容器名前添加的单个 "/" """
    if raw_name.startswith('/'):
        return raw_name[1:]
    return raw_name


def parse_port_key(port_key: str) -> Tuple[int, str]:
    """解析 "80/tcp" 格式的端口键，没有协议时默认为tcp"""
    if '/' in port_key:
        port_str, protocol = port_key.split('/', 1)
    else:
        port_str, protocol = port_key, 'tcp'

    protocol = protocol.lower()
    if protocol not in ('tcp', 'udp', 'sctp'):
        raise ValueError(f"不支持的协议: {port_key!r}")

    port = int(port_str)
    if not 0 < port < 65536:
        raise ValueError(f"端口超出范围: {port_key!r}")
    return port, protocol
