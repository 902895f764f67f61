#!/usr/bin/env python3
"""
配置验证工具
"""

import sys
import os
import argparse

# 添加src目录到路径
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from config import Config


def main():
    parser = argparse.ArgumentParser(description='Docker Port Forwarder 配置验证工具')
    parser.add_argument('--config', '-c',
                       default='/etc/docker-port-forwarder/config.yaml',
                       help='配置文件路径')
    parser.add_argument('--fix', '-f', action='store_true',
                       help='配置文件不存在时写入示例配置')
    parser.add_argument('--verbose', '-v', action='store_true',
                       help='详细输出')

    args = parser.parse_args()

    print("Docker Port Forwarder 配置验证工具")
    print("=" * 50)
    print(f"配置文件: {args.config}")
    print("")

    config = Config(config_file=args.config)

    if args.verbose:
        print("配置摘要:")
        summary = config.get_config_summary()
        for key, value in summary.items():
            if key not in ['is_valid', 'validation_errors']:
                print(f"  {key}: {value}")
        print("")

    if config.is_valid():
        print("✓ 配置验证通过")
        print("")
        print("转发规则:")
        for name, rules in sorted(config.rules.items()):
            for rule in rules:
                print(f"  {name}: {rule}")
        print("")
        return 0

    print("✗ 配置验证失败")
    print("")
    print("错误详情:")
    for error in config.get_validation_errors():
        print(f"  - {error}")
    print("")

    if args.fix:
        print("尝试自动修复...")
        if try_auto_fix(config):
            print("✓ 已写入示例配置，请编辑后重新验证")
        else:
            print("✗ 无法自动修复，请手动修复配置")
    else:
        print("使用 --fix 参数在配置文件不存在时写入示例配置")

    return 1


def try_auto_fix(config):
    """配置文件不存在时写入示例配置"""
    if os.path.exists(config.config_file):
        return False

    try:
        config.save_default_config()
        print(f"  ✓ 创建示例配置文件: {config.config_file}")
        return True
    except OSError as e:
        print(f"  ✗ 无法创建配置文件: {e}")
        return False


if __name__ == "__main__":
    sys.exit(main())
