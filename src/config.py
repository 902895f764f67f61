#!/usr/bin/env python3
"""
配置管理模块
"""

import yaml
import os
from pathlib import Path
from dataclasses import dataclass
from typing import List, Dict, Any

from models import ForwardingRule

DEFAULT_HTTP_PORT = 5152

# 原JSON配置格式中的键名
LEGACY_KEYS = {
    'IptablesPath': 'iptables_cmd',
    'DockerInterface': 'docker_interface',
    'Rules': 'rules',
}

# 配置文件中允许出现的键
FILE_KEYS = ('log_file', 'log_level', 'docker_socket', 'docker_interface', 'iptables_cmd', 'rules')


@dataclass
class Config:
    """配置类"""

    # 默认配置
    config_file: str = "/etc/docker-port-forwarder/config.yaml"
    log_file: str = ""                      # 为空时只输出到stdout
    log_level: str = "INFO"

    # Docker配置
    docker_socket: str = "unix:///var/run/docker.sock"
    docker_interface: str = "docker0"       # 来自该接口的流量不做DNAT

    # 命令路径
    iptables_cmd: str = "/sbin/iptables"

    # 存活检查HTTP端口
    http_port: int = 0

    # 容器名 -> 转发规则列表
    rules: Dict[str, List[ForwardingRule]] = None

    # 只读模式：只记录命令，不修改防火墙
    read_only: bool = False

    # 内部状态
    _validation_errors: List[str] = None
    _is_valid: bool = True

    def __post_init__(self):
        """初始化后处理"""
        if self.rules is None:
            self.rules = {}
        if not self.http_port:
            self.http_port = self._port_from_env()
        self.read_only = self.read_only or len(os.environ.get('READ_ONLY', '')) > 0
        self._validation_errors = []
        self.load_config()

    def load_config(self):
        """加载配置文件"""
        self._validation_errors = []
        self._is_valid = True

        if not os.path.exists(self.config_file):
            self._add_validation_error(f"配置文件不存在: {self.config_file}")
            return

        try:
            with open(self.config_file, 'r', encoding='utf-8') as f:
                config_data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            self._add_validation_error(f"YAML格式错误: {e}")
            return
        except OSError as e:
            self._add_validation_error(f"无法加载配置文件: {e}")
            return

        if not config_data or not isinstance(config_data, dict):
            self._add_validation_error("配置文件为空或格式错误")
            return

        config_data = {LEGACY_KEYS.get(key, key): value for key, value in config_data.items()}

        if not self._validate_config_data(config_data):
            return

        for key, value in config_data.items():
            if key == 'rules':
                self.rules = self._parse_rules(value)
            else:
                setattr(self, key, value)

    def save_default_config(self):
        """保存默认配置文件"""
        config_dir = Path(self.config_file).parent
        config_dir.mkdir(parents=True, exist_ok=True)

        default_config = {
            'log_level': self.log_level,
            'log_file': self.log_file,
            'docker_socket': self.docker_socket,
            'docker_interface': self.docker_interface,
            'iptables_cmd': self.iptables_cmd,
            'rules': {
                'web': [
                    {'port': 8080, 'chain': 'DOCKER_FORWARD'},
                ],
            },
        }

        with open(self.config_file, 'w', encoding='utf-8') as f:
            yaml.dump(default_config, f, default_flow_style=False,
                      allow_unicode=True, indent=2)

    def _add_validation_error(self, error: str):
        """添加验证错误"""
        self._validation_errors.append(error)
        self._is_valid = False

    def _validate_config_data(self, config_data: Dict[str, Any]) -> bool:
        """验证配置数据格式"""
        valid = True

        for key in config_data:
            if key not in FILE_KEYS:
                self._add_validation_error(f"未知配置项: {key}")
                valid = False

        for field in ('docker_socket', 'docker_interface', 'iptables_cmd'):
            if field in config_data:
                if not config_data[field] or not isinstance(config_data[field], str):
                    self._add_validation_error(f"配置项 {field} 必须是非空字符串")
                    valid = False

        # 检查日志级别
        if 'log_level' in config_data:
            valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
            if str(config_data['log_level']).upper() not in valid_levels:
                self._add_validation_error(f"无效的日志级别: {config_data['log_level']}")
                valid = False

        rules = config_data.get('rules')
        if rules is None:
            self._add_validation_error("缺少必需配置项: rules")
            return False
        if not isinstance(rules, dict):
            self._add_validation_error("rules 必须是 容器名 -> 规则列表 的映射")
            return False

        for name, entries in rules.items():
            if not isinstance(entries, list):
                self._add_validation_error(f"容器 {name} 的规则必须是列表")
                valid = False
                continue
            for index, entry in enumerate(entries):
                if not self._validate_rule(name, index, entry):
                    valid = False

        return valid

    def _validate_rule(self, name: str, index: int, entry: Any) -> bool:
        """验证单条转发规则"""
        where = f"rules.{name}[{index}]"
        if not isinstance(entry, dict):
            self._add_validation_error(f"{where} 必须是映射")
            return False

        valid = True
        port = entry.get('port')
        if isinstance(port, bool) or not isinstance(port, int) or not 0 < port < 65536:
            self._add_validation_error(f"{where}.port 必须是1-65535之间的整数: {port!r}")
            valid = False

        chain = entry.get('chain', entry.get('Chain'))
        if not chain or not isinstance(chain, str):
            self._add_validation_error(f"{where}.chain 必须是非空字符串")
            valid = False

        ip = entry.get('ip', '')
        if ip is not None and not isinstance(ip, str):
            self._add_validation_error(f"{where}.ip 必须是字符串")
            valid = False

        return valid

    @staticmethod
    def _parse_rules(rules: Dict[str, List[Dict[str, Any]]]) -> Dict[str, List[ForwardingRule]]:
        """把已验证的规则数据转换为ForwardingRule"""
        parsed = {}
        for name, entries in rules.items():
            parsed[str(name)] = [
                ForwardingRule(
                    host_port=entry['port'],
                    chain=entry.get('chain', entry.get('Chain')),
                    host_ip=entry.get('ip') or '',
                )
                for entry in entries
            ]
        return parsed

    @staticmethod
    def _port_from_env() -> int:
        """从PORT环境变量读取HTTP端口"""
        try:
            return int(os.environ.get('PORT', DEFAULT_HTTP_PORT))
        except ValueError:
            return DEFAULT_HTTP_PORT

    @property
    def chains(self) -> List[str]:
        """规则中引用的所有链（去重、排序）"""
        return sorted({rule.chain for entries in self.rules.values() for rule in entries})

    def is_valid(self) -> bool:
        """检查配置是否有效"""
        return self._is_valid

    def get_validation_errors(self) -> List[str]:
        """获取验证错误列表"""
        return self._validation_errors.copy()

    def get_config_summary(self) -> Dict[str, Any]:
        """获取配置摘要"""
        return {
            'docker_socket': self.docker_socket,
            'docker_interface': self.docker_interface,
            'iptables_cmd': self.iptables_cmd,
            'containers': len(self.rules),
            'rules': sum(len(entries) for entries in self.rules.values()),
            'chains': self.chains,
            'log_level': self.log_level,
            'read_only': self.read_only,
            'is_valid': self._is_valid,
            'validation_errors': self._validation_errors
        }
