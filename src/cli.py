"""Command-line interface for hashi-up"""

import argparse
import asyncio
import ipaddress
import logging
import sys
from pathlib import Path

from .config import ConfigManager
from .errors import HashiUpError, RemoteExecutionError
from .installer import ConsulInstaller
from .models import InstallOptions, Target

logger = logging.getLogger(__name__)


def ip_address(value: str) -> str:
    try:
        return str(ipaddress.ip_address(value))
    except ValueError:
        raise argparse.ArgumentTypeError(f"'{value}' is not a valid IP address")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="hashi-up",
        description="hashi-up - install and configure HashiCorp Consul on a machine"
    )
    parser.add_argument('--config-dir', type=Path, help='Directory holding config.yaml')
    parser.add_argument('--verbose', '-v', action='store_true', help='Enable debug logging')

    subparsers = parser.add_subparsers(dest='command', help='Commands')

    # Consul commands
    consul_parser = subparsers.add_parser('consul', help='Manage Consul')
    consul_sub = consul_parser.add_subparsers(dest='action', help='Consul actions')
    install = consul_sub.add_parser('install', help='Install Consul on a local or remote machine')

    target = install.add_argument_group('target')
    target.add_argument('--ip', type=ip_address, default='127.0.0.1', help='Public IP of node')
    target.add_argument('--user', help='Username for SSH login (default: root)')
    target.add_argument('--ssh-key', help='The ssh key to use for remote login (default: ~/.ssh/id_rsa)')
    target.add_argument('--ssh-port', type=int, help='The port on which to connect for ssh (default: 22)')
    target.add_argument('--local', action='store_true',
                        help='Running the installation locally, without ssh')
    target.add_argument('--show', action='store_true',
                        help='Just show the generated config instead of deploying Consul')
    target.add_argument('--binary', default='',
                        help='Upload and use this Consul binary instead of downloading')
    target.add_argument('--version', default=None,
                        help='Version of Consul to install, default to latest available')

    consul = install.add_argument_group('consul')
    consul.add_argument('--server', action='store_true', help='Switches agent to server mode')
    consul.add_argument('--datacenter', help='Data center of the local agent (default: dc1)')
    consul.add_argument('--bind', default='', help='Bind address for cluster communication')
    consul.add_argument('--advertise', default='', help='Advertise address to use')
    consul.add_argument('--client', default='', help='Address to bind for client access')
    consul.add_argument('--bootstrap-expect', type=int, default=1,
                        help='Number of servers to expect in bootstrap mode')
    consul.add_argument('--retry-join', action='append', default=[],
                        help='Address of an agent to join at start time with retries enabled. '
                             'Can be specified multiple times')
    consul.add_argument('--encrypt', default='', help='Gossip encryption key')
    consul.add_argument('--ca-file', default='',
                        help='Certificate authority used to check client and server connections')
    consul.add_argument('--cert-file', default='',
                        help="Certificate to verify the agent's authenticity")
    consul.add_argument('--key-file', default='',
                        help="Key used with the certificate to verify the agent's authenticity")
    consul.add_argument('--connect', action='store_true', help='Enables the Connect feature')
    consul.add_argument('--acl', action='store_true', help='Enables the Consul ACL system')
    consul.add_argument('--agent-token', default='',
                        help='Token the agent uses for internal agent operations')

    # Config commands
    config_parser = subparsers.add_parser('config', help='Manage hashi-up defaults')
    config_sub = config_parser.add_subparsers(dest='action', help='Config actions')
    get_parser = config_sub.add_parser('get', help='Show a default')
    get_parser.add_argument('key', help='Dot-notation key, e.g. target.user')
    set_parser = config_sub.add_parser('set', help='Change a default')
    set_parser.add_argument('key', help='Dot-notation key, e.g. target.user')
    set_parser.add_argument('value', help='New value')

    return parser


def build_target(args: argparse.Namespace, config: ConfigManager) -> Target:
    return Target(
        host=args.ip,
        user=args.user or config.get('target.user'),
        ssh_key=args.ssh_key or config.get('target.ssh_key'),
        ssh_port=args.ssh_port or int(config.get('target.ssh_port')),
        local=args.local,
    )


def build_options(args: argparse.Namespace, config: ConfigManager) -> InstallOptions:
    version = args.version if args.version is not None else config.get('consul.version', '')
    return InstallOptions(
        datacenter=args.datacenter or config.get('consul.datacenter'),
        bind=args.bind,
        advertise=args.advertise,
        client=args.client,
        server=args.server,
        bootstrap_expect=args.bootstrap_expect,
        retry_join=list(args.retry_join),
        encrypt=args.encrypt,
        ca_file=args.ca_file,
        cert_file=args.cert_file,
        key_file=args.key_file,
        enable_connect=args.connect,
        enable_acl=args.acl,
        agent_token=args.agent_token,
        version=str(version or ''),
        binary=args.binary,
        show=args.show,
    )


def run_consul_install(args: argparse.Namespace, config: ConfigManager) -> int:
    options = build_options(args, config)
    installer = ConsulInstaller(options, build_target(args, config))

    if options.show:
        print(installer.show())
        return 0

    print(f"🚀 Installing Consul on {installer.target.address}...")
    result = asyncio.run(installer.install())
    print(f"✅ {result.message}")
    print(f"   Version: {result.version or 'uploaded binary'}")
    print(f"   Service type: {result.service_type}")
    return 0


def run_config(args: argparse.Namespace, config: ConfigManager) -> int:
    if args.action == 'get':
        print(config.get(args.key, ''))
    else:
        config.set(args.key, args.value)
        print(f"✅ {args.key} = {args.value}")
    return 0


def main(argv=None) -> int:
    """Main CLI entry point"""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    # The package import may already have configured the root logger
    logging.getLogger().setLevel(logging.DEBUG if args.verbose else logging.INFO)

    if not args.command or not getattr(args, 'action', None):
        parser.print_help()
        return 1

    config = ConfigManager(args.config_dir)

    try:
        if args.command == 'consul':
            return run_consul_install(args, config)
        return run_config(args, config)

    except RemoteExecutionError as e:
        logger.error(f"Installation failed on target: {e}")
        print(f"❌ Error: installation script failed (exit {e.exit_code})")
        if e.output:
            print(e.output.rstrip())
        return 1

    except HashiUpError as e:
        logger.error(f"Command failed: {e}")
        print(f"❌ Error: {e}")
        return 1


if __name__ == '__main__':
    sys.exit(main())
