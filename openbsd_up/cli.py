"""CLI entry points for openbsd-up."""

from __future__ import annotations

import argparse
import getpass
import signal
import subprocess
import sys
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from openbsd_up.config import build_run_options, load_config_file, write_default_config
from openbsd_up.constants import DISK_FORMATS
from openbsd_up.context import Context, create_context
from openbsd_up.exceptions import ManagerError, NotFoundError
from openbsd_up.models import Overrides, VMStatus
from openbsd_up.network import format_ports
from openbsd_up.registry import OrasClient
from openbsd_up.store import Image, VirtualMachine
from openbsd_up.utils import humanize_delta, log, parse_positive_int, utcnow, validate_disk_size
from openbsd_up.vm import VMManager

PS_HEADER = ("NAME", "VCPU", "MEMORY", "STATUS", "PID", "BRIDGE", "PORTS", "CREATED")
IMAGES_HEADER = ("REPOSITORY", "TAG", "IMAGE ID", "SIZE", "FORMAT", "CREATED")
TABLE_PADDING = 2


# -- rendering ------------------------------------------------------------


def render_table(header: Sequence[str], rows: Sequence[Sequence[str]]) -> str:
    """Left-aligned columns separated by two spaces; the header is always present."""
    widths = [len(title) for title in header]
    for row in rows:
        for idx, cell in enumerate(row):
            widths[idx] = max(widths[idx], len(cell))
    lines = []
    for row in [tuple(header)] + [tuple(r) for r in rows]:
        cells = [f"{cell:<{widths[idx]}}" for idx, cell in enumerate(row)]
        lines.append((" " * TABLE_PADDING).join(cells).rstrip())
    return "\n".join(lines)


def format_status(vm: VirtualMachine, now: Optional[datetime] = None) -> str:
    if vm.status == VMStatus.RUNNING.value:
        return f"Up {humanize_delta(vm.updated_at, now)}"
    if vm.status == VMStatus.STOPPED.value:
        return f"Exited {humanize_delta(vm.updated_at, now)} ago"
    return vm.status


def format_size(num_bytes: int) -> str:
    size = float(num_bytes or 0)
    for unit in ("B", "KB", "MB", "GB"):
        if size < 1024:
            return f"{size:.0f}{unit}" if unit == "B" else f"{size:.1f}{unit}"
        size /= 1024
    return f"{size:.1f}TB"


def ps_rows(vms: Sequence[VirtualMachine], now: Optional[datetime] = None) -> List[List[str]]:
    now = now or utcnow()
    return [
        [
            vm.name,
            str(vm.cpus),
            vm.memory,
            format_status(vm, now),
            str(vm.pid) if vm.pid is not None else "-",
            vm.bridge or "-",
            format_ports(vm.port_forward),
            f"{humanize_delta(vm.created_at, now)} ago",
        ]
        for vm in vms
    ]


def image_rows(images: Sequence[Image], now: Optional[datetime] = None) -> List[List[str]]:
    now = now or utcnow()
    return [
        [
            image.repository,
            image.tag,
            image.id[:12],
            format_size(image.size),
            image.format,
            f"{humanize_delta(image.created_at, now)} ago",
        ]
        for image in images
    ]


def _plain(record: Dict[str, Any]) -> Dict[str, Any]:
    return {
        key: value.isoformat() if isinstance(value, datetime) else value
        for key, value in record.items()
    }


# -- argument parsing -----------------------------------------------------


def _add_resource_flags(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("-c", "--cpu", help="Type of CPU to emulate (default: host)")
    parser.add_argument("-C", "--cpus", help="Number of CPU cores (default: 2)")
    parser.add_argument("-m", "--memory", help="Amount of memory for the VM (default: 2G)")
    parser.add_argument("-p", "--port-forward", dest="port_forward", help="host:guest[,host:guest...] (NAT only)")
    parser.add_argument("-d", "--detach", action="store_true", default=None, help="Run in the background")


def _add_create_flags(parser: argparse.ArgumentParser) -> None:
    _add_resource_flags(parser)
    parser.add_argument("-b", "--bridge", help="Attach to this host bridge (requires sudo)")
    parser.add_argument("--name", help="Name for the new VM (default: random)")


def build_launch_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="openbsd-up",
        description="Run OpenBSD virtual machines with QEMU",
        epilog=f"Commands: {', '.join(sorted(COMMANDS))}. Use '<command> -h' for details.",
    )
    parser.add_argument(
        "source",
        nargs="?",
        help="Path or URL to an install ISO, or an OpenBSD version such as 7.8",
    )
    parser.add_argument("-o", "--output", help="Output path for the downloaded ISO")
    parser.add_argument("-i", "--image", help="Path to the VM disk image (created if missing)")
    parser.add_argument(
        "--disk-format",
        dest="disk_format",
        help=f"Disk image format: {', '.join(sorted(DISK_FORMATS))} (default: raw)",
    )
    parser.add_argument("--size", help="Size of the disk image to create (default: 20G)")
    _add_create_flags(parser)
    return parser


def build_command_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="openbsd-up", description="Manage openbsd-up virtual machines")
    sub = parser.add_subparsers(dest="command", required=True)

    ps = sub.add_parser("ps", help="List virtual machines")
    ps.add_argument("-a", "--all", action="store_true", help="Show stopped virtual machines too")

    start = sub.add_parser("start", help="Start a stopped virtual machine")
    start.add_argument("name")
    _add_resource_flags(start)

    for command, text in (
        ("stop", "Stop a running virtual machine"),
        ("restart", "Restart a virtual machine in the background"),
        ("rm", "Remove a virtual machine record"),
        ("inspect", "Show the stored record of a virtual machine or image"),
    ):
        cmd = sub.add_parser(command, help=text)
        cmd.add_argument("name")

    logs = sub.add_parser("logs", help="Show the log of a detached virtual machine")
    logs.add_argument("name")
    logs.add_argument("-f", "--follow", action="store_true", help="Follow log output")

    sub.add_parser("init", help="Write a default openbsd-up.yaml to the current directory")
    sub.add_parser("images", help="List local registry images")

    rmi = sub.add_parser("rmi", help="Remove a local image record")
    rmi.add_argument("image")

    pull = sub.add_parser("pull", help="Pull a disk image from an OCI registry")
    pull.add_argument("image")

    push = sub.add_parser("push", help="Push the disk image of a VM to an OCI registry")
    push.add_argument("name")
    push.add_argument("image")

    run_cmd = sub.add_parser("run", help="Create and launch a VM from a registry image")
    run_cmd.add_argument("image")
    _add_create_flags(run_cmd)

    login = sub.add_parser("login", help="Log in to an OCI registry")
    login.add_argument("registry")
    login.add_argument("-u", "--username", required=True)
    login.add_argument("--password-stdin", action="store_true", help="Read the password from stdin")
    return parser


def _overrides_from_args(args: argparse.Namespace) -> Overrides:
    return Overrides(
        cpu=args.cpu,
        cpus=parse_positive_int(args.cpus, "cpus") if args.cpus is not None else None,
        memory=validate_disk_size(args.memory, "memory") if args.memory is not None else None,
        port_forward=args.port_forward,
    )


def _create_values(args: argparse.Namespace) -> Dict[str, Any]:
    keys = ("cpu", "cpus", "memory", "image", "disk_format", "size", "bridge", "port_forward", "detach", "output", "name")
    return {key: getattr(args, key, None) for key in keys}


# -- command handlers -----------------------------------------------------


def cmd_launch(args: argparse.Namespace, ctx: Context) -> int:
    options = build_run_options(_create_values(args), load_config_file())
    result = VMManager(ctx).create(args.source, options)
    return result.exit_code or 0


def cmd_ps(args: argparse.Namespace, ctx: Context) -> int:
    vms = VMManager(ctx).list(all=args.all)
    print(render_table(PS_HEADER, ps_rows(vms)))
    return 0


def cmd_start(args: argparse.Namespace, ctx: Context) -> int:
    result = VMManager(ctx).start(args.name, detach=bool(args.detach), overrides=_overrides_from_args(args))
    return result.exit_code or 0


def cmd_stop(args: argparse.Namespace, ctx: Context) -> int:
    VMManager(ctx).stop(args.name)
    return 0


def cmd_restart(args: argparse.Namespace, ctx: Context) -> int:
    VMManager(ctx).restart(args.name)
    return 0


def cmd_rm(args: argparse.Namespace, ctx: Context) -> int:
    VMManager(ctx).remove(args.name)
    return 0


def cmd_inspect(args: argparse.Namespace, ctx: Context) -> int:
    """Dump a VM record, or failing that an image record, as YAML."""
    try:
        record = VMManager(ctx).inspect(args.name).to_dict()
    except NotFoundError:
        image = ctx.store.find_image(args.name)
        if image is None:
            raise NotFoundError(f"No virtual machine or image found with name or ID {args.name}.")
        record = image.to_dict()
    print(yaml.safe_dump(_plain(record), sort_keys=False).rstrip())
    return 0


def cmd_logs(args: argparse.Namespace, ctx: Context) -> int:
    path = VMManager(ctx).log_path(args.name)
    if not path.exists():
        raise ManagerError(f"No logs found for {args.name} at {path}")
    if not args.follow:
        sys.stdout.write(path.read_text(errors="replace"))
        sys.stdout.flush()
        return 0

    proc = subprocess.Popen(["tail", "-f", str(path)])
    prev_sigterm = signal.signal(signal.SIGTERM, lambda signum, frame: proc.terminate())
    try:
        return proc.wait()
    except KeyboardInterrupt:
        proc.terminate()
        proc.wait()
        return 0
    finally:
        signal.signal(signal.SIGTERM, prev_sigterm)


def cmd_init(args: argparse.Namespace, ctx: Optional[Context]) -> int:
    path = write_default_config()
    log("SUCCESS", f"Wrote default configuration to {path}")
    return 0


def cmd_images(args: argparse.Namespace, ctx: Context) -> int:
    print(render_table(IMAGES_HEADER, image_rows(ctx.store.list_images())))
    return 0


def cmd_rmi(args: argparse.Namespace, ctx: Context) -> int:
    image = ctx.store.delete_image(args.image)
    log("SUCCESS", f"Removed image {image.reference}")
    return 0


def cmd_pull(args: argparse.Namespace, ctx: Context) -> int:
    OrasClient(ctx).pull(args.image)
    return 0


def cmd_push(args: argparse.Namespace, ctx: Context) -> int:
    vm = VMManager(ctx).get(args.name)
    OrasClient(ctx).push(vm, args.image)
    return 0


def cmd_run(args: argparse.Namespace, ctx: Context) -> int:
    image = OrasClient(ctx).get_or_pull(args.image)
    options = build_run_options(_create_values(args), load_config_file())
    result = VMManager(ctx).run_image(image.path, image.format, options)
    return result.exit_code or 0


def cmd_login(args: argparse.Namespace, ctx: Context) -> int:
    if args.password_stdin:
        password = sys.stdin.read().strip()
    else:
        password = getpass.getpass("Password: ")
    OrasClient(ctx).login(args.registry, args.username, password)
    return 0


COMMANDS: Dict[str, Callable[[argparse.Namespace, Context], int]] = {
    "ps": cmd_ps,
    "start": cmd_start,
    "stop": cmd_stop,
    "restart": cmd_restart,
    "rm": cmd_rm,
    "inspect": cmd_inspect,
    "logs": cmd_logs,
    "init": cmd_init,
    "images": cmd_images,
    "rmi": cmd_rmi,
    "pull": cmd_pull,
    "push": cmd_push,
    "run": cmd_run,
    "login": cmd_login,
}


def parse_args(argv: Sequence[str]) -> argparse.Namespace:
    """Subcommands when the first word names one, otherwise the create+launch form."""
    if argv and argv[0] in COMMANDS:
        return build_command_parser().parse_args(argv)
    args = build_launch_parser().parse_args(argv)
    args.command = None
    return args


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(list(sys.argv[1:] if argv is None else argv))
    handler = COMMANDS.get(args.command, cmd_launch)

    ctx: Optional[Context] = None
    try:
        if args.command != "init":
            ctx = create_context()
        return handler(args, ctx)
    except ManagerError as exc:
        log("ERROR", str(exc))
        return exc.exit_code
    except Exception as exc:
        log("ERROR", f"Unexpected error: {exc}")
        import traceback

        traceback.print_exc()
        return 1
    finally:
        if ctx is not None:
            ctx.close()


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
