#!/usr/bin/env python3
"""
防火墙管理模块

所有规则都在nat表中，由iptables命令逐条添加/删除。每条规则的注释里带有
容器短ID（"Docker <容器名>[<短ID>]"），删除时通过列出链中规则并匹配该标记完成。
"""

import subprocess
import logging
import re
from dataclasses import dataclass
from typing import List, Dict, Iterable, Optional

from models import Container, FirewallError, ForwardingRule, parse_port_key, short_id

LINE_NUMBER_RE = re.compile(r'^\s*(\d+)\s')
COMMENT_RE = re.compile(r'/\*\s*(.*?)\s*\*/')
TAG_RE = re.compile(r'\[([0-9A-Za-z]+)\]')


@dataclass(frozen=True)
class ListedRule:
    """`iptables -L --line-numbers` 输出中的一条规则"""
    line_number: int
    tag: Optional[str] = None


def parse_rule_listing(output: str) -> List[ListedRule]:
    """解析 `iptables -t nat -L <链> -n --line-numbers` 的输出

    每条规则行以十进制行号开头；由本程序创建的规则在注释中带有 "[<短ID>]" 标记。
    链标题行和表头行被忽略。没有标记的规则 tag 为None。
    """
    rules = []
    for line in output.splitlines():
        match = LINE_NUMBER_RE.match(line)
        if not match:
            continue

        tag = None
        comment = COMMENT_RE.search(line)
        if comment:
            tags = TAG_RE.findall(comment.group(1))
            if tags:
                tag = tags[-1]
        rules.append(ListedRule(line_number=int(match.group(1)), tag=tag))
    return rules


class FirewallManager:
    """NAT转发规则管理器"""

    def __init__(self, config):
        self.config = config
        self.logger = logging.getLogger(__name__)
        self.rules: Dict[str, List[ForwardingRule]] = config.rules
        self.chains: List[str] = config.chains
        self.read_only: bool = config.read_only

        self.logger.info(f"已加载 {len(self.rules)} 个容器的规则，{len(self.chains)} 条链")
        if self.read_only:
            self.logger.warning("只读模式：不会修改防火墙")

    def _call(self, args: List[str]):
        """执行会修改防火墙的iptables命令，只读模式下只记录"""
        command = [self.config.iptables_cmd] + args
        if self.read_only:
            self.logger.info(f"[READ-ONLY] {' '.join(command)}")
            return
        self.logger.info(' '.join(command))
        self._run(command)

    def _run(self, command: List[str]) -> str:
        """运行命令并返回stdout，失败时抛出FirewallError"""
        try:
            result = subprocess.run(command, capture_output=True, text=True)
        except OSError as e:
            raise FirewallError(f"无法执行 {command[0]}: {e}") from e

        if result.returncode != 0:
            output = (result.stderr or result.stdout or '').strip()
            raise FirewallError(f"{' '.join(command)} 失败 (退出码 {result.returncode}): {output}")
        return result.stdout

    def list_chain(self, chain: str) -> List[ListedRule]:
        """列出链中的规则（只读操作，只读模式下也会执行）"""
        command = [self.config.iptables_cmd, "-t", "nat", "-L", chain, "-n", "--line-numbers"]
        self.logger.debug(' '.join(command))
        try:
            output = self._run(command)
        except FirewallError as e:
            raise FirewallError(f"无法获取链 {chain} 的规则列表: {e}") from e
        return parse_rule_listing(output)

    def ensure_chains(self):
        """确保所有链存在且为空

        iptables没有"不存在则创建"，创建失败（通常是链已存在）时改为清空该链。
        """
        for chain in self.chains:
            try:
                self._call(["-t", "nat", "-N", chain])
                self.logger.info(f"创建防火墙链: {chain}")
                continue
            except FirewallError as e:
                self.logger.debug(f"创建链 {chain} 失败，尝试清空: {e}")

            try:
                self._call(["-t", "nat", "-F", chain])
                self.logger.info(f"已清空防火墙链: {chain}")
            except FirewallError as e:
                raise FirewallError(f"无法创建链 {chain}: {e}") from e

    def _build_rule(self, container: Container, rule: ForwardingRule,
                    container_port: int, protocol: str) -> List[str]:
        """构建DNAT规则参数"""
        return [
            "-t", "nat",
            "-A", rule.chain,
            "-d", rule.destination,
            "!", "-i", self.config.docker_interface,
            "-p", protocol, "-m", protocol,
            "--dport", str(rule.host_port),
            "-j", "DNAT",
            "--to-destination", f"{container.address}:{container_port}",
            "-m", "comment", "--comment", f"Docker {container.name}[{container.short_id}]"
        ]

    def add_container_rules(self, container: Container) -> List[FirewallError]:
        """为容器添加所有匹配的转发规则

        每条命令独立执行，单条失败只记录，不影响其他规则。返回失败列表。
        """
        rules = self.rules.get(container.name, [])
        if not rules:
            self.logger.debug(f"容器 {container} 没有配置转发规则")
            return []

        self.logger.info(f"添加容器规则: {container}")
        errors = []
        added = 0

        for rule in rules:
            matched = False
            for port_key, bindings in container.port_bindings.items():
                for binding in bindings:
                    if binding.host_port != rule.host_port:
                        continue
                    matched = True
                    try:
                        container_port, protocol = parse_port_key(port_key)
                    except ValueError as e:
                        self.logger.warning(f"跳过无法解析的端口 {port_key}: {e}")
                        continue

                    try:
                        self._call(self._build_rule(container, rule, container_port, protocol))
                        added += 1
                    except FirewallError as e:
                        self.logger.error(f"添加规则失败: {container} {rule}, 错误: {e}")
                        errors.append(e)

            if not matched:
                self.logger.debug(f"容器 {container} 没有发布端口 {rule.host_port}，跳过规则 {rule}")

        self.logger.info(f"为容器 {container} 添加了 {added} 条规则")
        return errors

    def remove_container_rules(self, container_id: str):
        """删除所有带有该容器短ID标记的规则

        每条链按行号从大到小删除，删除后前面的行号不变。
        任何列出/删除失败都抛出FirewallError。
        """
        tag = short_id(container_id)
        self.logger.info(f"删除容器规则: {tag}")

        for chain in self.chains:
            try:
                listed = self.list_chain(chain)
            except FirewallError:
                if self.read_only:
                    self.logger.warning(f"[READ-ONLY] 无法读取链 {chain}，跳过")
                    continue
                raise

            line_numbers = sorted((r.line_number for r in listed if r.tag == tag), reverse=True)
            for line_number in line_numbers:
                try:
                    self._call(["-t", "nat", "-D", chain, str(line_number)])
                except FirewallError as e:
                    raise FirewallError(f"无法从链 {chain} 删除规则 {line_number}: {e}") from e

            if line_numbers:
                self.logger.info(f"从链 {chain} 删除了 {len(line_numbers)} 条规则")

    def rebuild(self, containers: Iterable[Container]) -> List[FirewallError]:
        """重建所有链：清空后为每个容器重新添加规则

        链创建失败时抛出FirewallError；单个容器的添加失败只汇总记录。
        """
        self.logger.info("重建防火墙规则")
        self.ensure_chains()

        errors = []
        for container in containers:
            errors.extend(self.add_container_rules(container))

        if errors:
            self.logger.warning(f"重建完成，{len(errors)} 条规则添加失败")
        else:
            self.logger.info("重建完成")
        return errors
