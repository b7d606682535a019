"""syntropy: operator command line for node provisioning"""

import argparse
import json
import logging
import os
import signal
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

import yaml

from . import __version__
from .console import (
    Colors,
    confirm_interactive,
    format_size,
    log_file_path,
    setup_logging,
    write_colored_output,
    write_error,
    write_info,
    write_success,
    write_warning,
)
from .errors import (
    EXIT_CANCELED,
    EXIT_OK,
    EXIT_UNKNOWN,
    Canceled,
    IdentityFailure,
    InvalidIntent,
    PlatformFailure,
    ProvisionError,
)
from .hostdev import WSL, detect_platform, get_adapter
from .identity import IdentityManager
from .intent import AUTO_DEVICE, LABEL_PATTERN, ProvisionIntent, check_node_name
from .keystore import KEY_PURPOSES, KeyStore
from .locks import LockBusy, file_lock, lock_name
from .pipeline import CancelToken, ProvisioningPipeline
from .records import NodeRecord, NodeRecordWriter
from .settings import Settings

logger = logging.getLogger(__name__)

EXAMPLES = """examples:
  syntropy create /dev/sdb --node-name node-01
  syntropy create --auto-detect --node-name node-01 --coordinates=-23.55,-46.63
  syntropy list --format json
  syntropy format /dev/sdb --label BACKUP
  syntropy debug
  syntropy keys list
  syntropy keys rotate-owner node-01
  syntropy record-node node-01 --description "rack 2"
"""


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='syntropy',
        description="Provision Syntropy Cooperative Grid nodes onto bootable USB media",
        epilog=EXAMPLES,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument('--version', action='version', version=f"%(prog)s {__version__}")
    parser.add_argument('-v', '--verbose', action='store_true', help="Also print the log to stderr")
    parser.add_argument('--config', help="Alternate configuration file (default: ~/.syntropy/config.yaml)")
    commands = parser.add_subparsers(dest='command', required=True)

    create = commands.add_parser('create', help="Write install media with a cloud-init seed for a node")
    create.add_argument('device', nargs='?', help="Target device (/dev/sdX or PHYSICALDRIVE<n>)")
    create.add_argument('--auto-detect', action='store_true', help="Pick the only removable device present")
    create.add_argument('--node-name', required=True, help="Node name (3-50 letters, digits, - or _)")
    create.add_argument('--description', default='', help="Free text node description")
    create.add_argument('--coordinates', default='', help="Geographic hint such as 'lat,lon'")
    create.add_argument('--owner-key', help="Existing owner private key (with .pub beside it)")
    create.add_argument('--label', default='SYNTROPY', help="Media label recorded in the seed (default: SYNTROPY)")
    create.add_argument('--work-dir', help="Parent directory for the session work directory")
    create.add_argument('--cache-dir', help="ISO cache directory (default: ~/.syntropy/cache)")
    create.add_argument('--iso', help="Use this Ubuntu Server ISO instead of the cache")
    create.add_argument('--discovery-server', help="Discovery endpoint host name")
    create.add_argument('--created-by', help="Operator name recorded on the node (default: $USER)")
    create.add_argument('--force', action='store_true', help="Do not ask for confirmation")
    create.add_argument('--keep-work-dir', action='store_true', help="Keep the work directory after success")

    list_cmd = commands.add_parser('list', help="List removable devices")
    list_cmd.add_argument('--format', choices=['table', 'json', 'yaml'], default='table')

    fmt = commands.add_parser('format', help="Erase a device into a single FAT32 partition")
    fmt.add_argument('device', help="Device to format")
    fmt.add_argument('--label', default='SYNTROPY', help="FAT32 volume label (default: SYNTROPY)")
    fmt.add_argument('--force', action='store_true', help="Do not ask for confirmation")

    debug = commands.add_parser('debug', help="Check tools, privileges and devices on this host")
    debug.add_argument('--work-dir', help="Also check that this directory is writable")

    keys = commands.add_parser('keys', help="Manage stored node keys")
    key_commands = keys.add_subparsers(dest='keys_command', required=True)
    key_commands.add_parser('list', help="List stored private keys")
    delete = key_commands.add_parser('delete', help="Delete the keys of a node")
    delete.add_argument('node', help="Node name")
    delete.add_argument('--purpose', choices=KEY_PURPOSES, help="Only delete this keypair")
    delete.add_argument('--force', action='store_true', help="Do not ask for confirmation")
    rotate = key_commands.add_parser('rotate-owner', help="Replace the owner key of a node")
    rotate.add_argument('node', help="Node name")
    rotate.add_argument('--force', action='store_true', help="Do not ask for confirmation")

    record = commands.add_parser('record-node', help="Write a node record from stored keys")
    record.add_argument('node', help="Node name")
    record.add_argument('--description', default='', help="Node description")
    record.add_argument('--created-by', help="Operator name (default: $USER)")
    record.add_argument('--overwrite', action='store_true', help="Replace an existing record")

    return parser


def identity_manager(settings: Settings) -> IdentityManager:
    return IdentityManager(
        KeyStore(settings.keys_dir),
        settings.locks_dir,
        settings.tls_ca_key_bits,
        settings.tls_node_key_bits,
    )


def cmd_create(args, settings: Settings, cancel: CancelToken) -> int:
    if args.device and args.auto_detect:
        raise InvalidIntent([('device_selector', 'give a device or --auto-detect, not both')])

    intent = ProvisionIntent(
        node_name=args.node_name,
        description=args.description,
        coordinates=args.coordinates,
        label=args.label,
        discovery_endpoint=args.discovery_server or settings.discovery_endpoint,
        iso_path=args.iso,
        device_selector=args.device or AUTO_DEVICE,
        created_by=args.created_by or settings.operator,
        owner_key_ref=args.owner_key,
        work_dir=args.work_dir,
        cache_dir=args.cache_dir,
        force=args.force,
    )
    adapter = get_adapter(settings=settings)
    pipeline = ProvisioningPipeline(settings, adapter, cancel=cancel, keep_work_dir=args.keep_work_dir)
    session = pipeline.run(intent)

    print()
    write_info("Fingerprints:")
    for purpose, fingerprint in session.identity_snapshot.items():
        write_colored_output(f"  {purpose:<10} {fingerprint}", Colors.WHITE)
    if session.record_path:
        write_info(f"Node record: {session.record_path}")
    write_info("Boot the node from this device; cloud-init applies the seed on first boot.")
    return EXIT_OK


def cmd_list(args, settings: Settings) -> int:
    platform = detect_platform()
    if platform == WSL and args.format == 'table':
        write_info("WSL detected: devices are read from Windows")
    devices = get_adapter(platform, settings).enumerate_devices()
    rows = [device.to_dict() for device in devices]

    if args.format == 'json':
        print(json.dumps(rows, indent=2))
    elif args.format == 'yaml':
        print(yaml.safe_dump(rows, default_flow_style=False, sort_keys=False), end='')
    elif not rows:
        write_warning("No removable devices found")
    else:
        header = f"{'PATH':<24} {'SIZE':>9}  {'BUS':<6} {'MODEL':<28} SERIAL"
        write_colored_output(header, Colors.GRAY)
        for device in devices:
            write_colored_output(
                f"{device.path:<24} {format_size(device.size_bytes):>9}  {device.bus:<6} "
                f"{device.model[:28]:<28} {device.serial}",
                Colors.WHITE,
            )
    return EXIT_OK


def cmd_format(args, settings: Settings) -> int:
    if not LABEL_PATTERN.match(args.label):
        raise InvalidIntent([('label', 'must be 1-11 characters of letters, digits, "-" and "_"')])
    label = args.label.upper()

    adapter = get_adapter(settings=settings)
    device = adapter.describe_device(args.device)
    adapter.validate_device(device)

    if not args.force:
        prompt = f"ALL DATA on {device.describe()} will be erased"
        if not adapter.confirm_interactive(prompt):
            raise Canceled('operator declined to format the device', subphase='confirm')

    lock_path = settings.locks_dir / f"device-{lock_name(device.path)}.lock"
    try:
        with file_lock(lock_path, blocking=False):
            write_info(f"Formatting {device.path} as FAT32 ({label})...")
            adapter.format_device(device, label)
    except LockBusy:
        raise PlatformFailure('offline', f"{device.path} is in use by another session")
    write_success(f"Device {device.path} formatted")
    return EXIT_OK


def cmd_debug(args, settings: Settings) -> int:
    platform = detect_platform()
    adapter = get_adapter(platform, settings)
    write_colored_output("\n🔍 Syntropy environment diagnostics", Colors.MAGENTA)
    write_colored_output("=" * 60, Colors.GRAY)
    write_info(f"Platform: {platform}")
    write_info(f"State directory: {settings.state_root}")
    write_info(f"Operator: {settings.operator}")

    checks = adapter.diagnostics()
    if args.work_dir:
        work_dir = Path(args.work_dir).expanduser()
        checks.append(('work directory writable', work_dir.is_dir() and os.access(work_dir, os.W_OK), str(work_dir)))

    try:
        devices = adapter.enumerate_devices()
        checks.append(('device enumeration', True, f"{len(devices)} candidate device(s)"))
    except ProvisionError as e:
        checks.append(('device enumeration', False, str(e)))

    failed = 0
    for name, ok, detail in checks:
        line = f"{name}: {detail}" if detail else name
        if ok:
            write_success(line)
        else:
            failed += 1
            write_error(line)

    if failed:
        write_warning(f"{failed} check(s) failed")
        return EXIT_UNKNOWN
    write_success("All checks passed")
    return EXIT_OK


def require_node_name(name: str) -> None:
    reason = check_node_name(name)
    if reason:
        raise InvalidIntent([('node_name', reason)])


def cmd_keys(args, settings: Settings) -> int:
    store = KeyStore(settings.keys_dir)

    if args.keys_command == 'list':
        names = store.list_private_keys()
        if not names:
            write_warning(f"No keys stored in {settings.keys_dir}")
        for name in names:
            print(name)
        return EXIT_OK

    if args.keys_command == 'delete':
        require_node_name(args.node)
        what = f"the {args.purpose} key" if args.purpose else "all keys"
        if not args.force and not confirm_interactive(f"Delete {what} of {args.node}? This cannot be undone."):
            raise Canceled('operator declined to delete keys', subphase='confirm')
        if args.purpose:
            removed = store.delete(args.node, args.purpose)
        else:
            removed = store.delete_node(args.node)
        if not removed:
            raise IdentityFailure(f"no keys stored for {args.node}")
        write_success(f"Deleted {len(removed)} key file(s) of {args.node}")
        return EXIT_OK

    require_node_name(args.node)
    if not args.force and not confirm_interactive(
            f"Replace the owner key of {args.node}? Media written with the old key keeps trusting it."):
        raise Canceled('operator declined to rotate the owner key', subphase='confirm')
    keypair = identity_manager(settings).rotate_owner_key(args.node)
    write_success(f"New owner key for {args.node}: {keypair.fingerprint_sha256}")
    return EXIT_OK


def cmd_record_node(args, settings: Settings) -> int:
    require_node_name(args.node)

    fingerprints = identity_manager(settings).existing_identity_fingerprints(args.node)
    record = NodeRecord(
        name=args.node,
        description=args.description,
        created_at=datetime.now(timezone.utc).strftime('%Y-%m-%dT%H:%M:%SZ'),
        created_by=args.created_by or settings.operator,
        fingerprints=fingerprints,
        paths={'identity_dir': str(settings.keys_dir)},
    )
    path = NodeRecordWriter(settings.nodes_dir, settings.locks_dir).write(record, overwrite=args.overwrite)
    write_success(f"Node record written to {path}")
    return EXIT_OK


def report_error(error: ProvisionError, log_dir: Optional[Path]) -> None:
    write_error(f"{error.code}: {error.message}")
    if error.subphase:
        write_colored_output(f"  subphase:   {error.subphase}", Colors.GRAY, stream=sys.stderr)
    if isinstance(error, InvalidIntent):
        for field_name, reason in error.violations:
            write_colored_output(f"  {field_name}: {reason}", Colors.YELLOW, stream=sys.stderr)
    if error.release_error is not None:
        write_colored_output(f"  release also failed: {error.release_error}", Colors.RED, stream=sys.stderr)
    if error.suggestion:
        write_colored_output(f"  suggestion: {error.suggestion}", Colors.CYAN, stream=sys.stderr)
    log_file = log_file_path(log_dir)
    if log_file is not None and log_file.exists():
        write_colored_output(f"  log:        {log_file}", Colors.GRAY, stream=sys.stderr)


def main(argv: Optional[List[str]] = None) -> int:
    """Main execution function"""
    args = build_parser().parse_args(argv)

    try:
        settings = Settings.from_env(config_path=Path(args.config) if args.config else None)
    except (OSError, ValueError, yaml.YAMLError) as e:
        write_error(f"Invalid configuration: {e}")
        return EXIT_UNKNOWN

    log_dir = None
    try:
        setup_logging(settings.logs_dir, settings.log_level, args.verbose)
        log_dir = settings.logs_dir
    except OSError as e:
        write_warning(f"File logging disabled: {e}")

    cancel = CancelToken()

    def handle_interrupt(signum, frame):
        if not cancel.is_set():
            write_warning("Interrupt received; stopping at the next safe point")
        cancel.set()

    previous_handler = signal.signal(signal.SIGINT, handle_interrupt)
    logger.info(f"syntropy {__version__}: {args.command} {' '.join(argv if argv is not None else sys.argv[1:])}")

    try:
        if args.command == 'create':
            return cmd_create(args, settings, cancel)
        if args.command == 'list':
            return cmd_list(args, settings)
        if args.command == 'format':
            return cmd_format(args, settings)
        if args.command == 'debug':
            return cmd_debug(args, settings)
        if args.command == 'keys':
            return cmd_keys(args, settings)
        return cmd_record_node(args, settings)
    except ProvisionError as e:
        logger.error(f"{args.command} failed: {json.dumps(e.to_dict())}")
        report_error(e, log_dir)
        return e.exit_code
    except KeyboardInterrupt:
        write_error("Interrupted")
        return EXIT_CANCELED
    except Exception as e:
        logger.exception(f"Unexpected error in {args.command}")
        write_error(f"Unexpected error: {str(e)}")
        return EXIT_UNKNOWN
    finally:
        signal.signal(signal.SIGINT, previous_handler)


if __name__ == "__main__":
    sys.exit(main())
