"""CLI entry points for vmkeeper."""

from __future__ import annotations

import argparse
import asyncio
from pathlib import Path
from typing import Any, Awaitable, Callable, List, Optional

from vmkeeper.config import parse_env
from vmkeeper.constants import DISK_IMAGE_TYPES, DRIVE_INTERFACES
from vmkeeper.drives import EditSession
from vmkeeper.exceptions import ManagerError
from vmkeeper.library import Library
from vmkeeper.machine import Machine
from vmkeeper.models import DriveSpec, LibrarySettings, MachineConfig
from vmkeeper.utils import log


def _format_size(num_bytes: int) -> str:
    size = float(num_bytes)
    for unit in ("B", "KiB", "MiB", "GiB"):
        if size < 1024:
            return f"{size:.1f} {unit}" if unit != "B" else f"{int(size)} B"
        size /= 1024
    return f"{size:.1f} TiB"


def list_machines(library: Library) -> None:
    """Print the machine list in stored order, then any downloads in flight."""
    machines = library.registry.machines
    if not machines:
        log("INFO", "No virtual machines")
        return
    max_name = max(len(vm.name) for vm in machines)
    for vm in machines:
        if vm.is_placeholder:
            state = "missing"
        elif vm.is_shortcut:
            state = "shortcut"
        else:
            state = "local"
        size = _format_size(library.compute_size(vm))
        print(f"  {vm.name:<{max_name}}  {state:<8}  {size:>10}  {vm.path}")
    for pending in library.registry.pending:
        print(f"  {pending.name:<{max_name}}  download  {pending.url}")


def show_machine(vm: Machine) -> None:
    """Print a machine's configuration and drives."""
    print(f"  name: {vm.name}")
    print(f"  path: {vm.path}")
    print(f"  shortcut: {vm.is_shortcut}")
    if vm.config is None:
        return
    print(f"  arch: {vm.config.arch}")
    print(f"  backend: {vm.config.backend}")
    print(f"  uuid: {vm.config.uuid}")
    if vm.config.notes:
        print(f"  notes: {vm.config.notes}")
    if vm.config.drives:
        print("  drives:")
        for drive in vm.config.drives:
            source = drive.image_path or "(removable)"
            print(f"    {drive.name}: {source} ({drive.image_type}, {drive.interface})")


def find_machine(library: Library, name: str) -> Any:
    vm = library.registry.find_by_name(name)
    if vm is None:
        vm = library.registry.find_by_path(Path(name))
    if vm is None:
        raise ManagerError(f"No virtual machine named '{name}'")
    return vm


def find_drive_index(vm: Any, drive_name: str) -> int:
    if vm.config is None:
        raise ManagerError(f"'{vm.name}' is not available on disk")
    for index, drive in enumerate(vm.config.drives):
        if drive.name == drive_name or drive.image_path == drive_name:
            return index
    raise ManagerError(f"'{vm.name}' has no drive '{drive_name}'")


async def edit_and_save(
    library: Library, vm: Any, change: Callable[[EditSession], Awaitable[Any]]
) -> None:
    """Apply ``change`` inside an edit session; save on success, discard on failure."""
    session = await library.edit(vm)
    try:
        await change(session)
    except BaseException:
        await library.discard(vm, session)
        raise
    await library.save(vm, session)


async def create_machine(library: Library, args: argparse.Namespace) -> Machine:
    config = MachineConfig(name=args.name, arch=args.arch, backend=args.backend, notes=args.notes or "")
    session = library.new_session(config)
    try:
        if args.disk_size:
            await library.drives.create_drive(
                DriveSpec(image_type="disk", interface=config.default_interface("disk"), size_mib=args.disk_size, raw=args.raw),
                session,
            )
        for image in args.drive or []:
            await library.drives.import_drive_auto(Path(image), session)
        if args.cdrom:
            await library.drives.create_drive(
                DriveSpec(image_type="cd", interface=config.default_interface("cd"), removable=True),
                session,
                source=Path(args.cdrom),
            )
        return await library.create(config, session)
    except BaseException:
        await library.discard(None, session)
        raise


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="vmkeeper", description="Virtual machine library and disk image manager")
    parser.add_argument("--config", type=Path, default=None, help="Path to a YAML settings file")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("list", help="List virtual machines")
    sub.add_parser("refresh", help="Reconcile the list with the storage directory")

    show = sub.add_parser("show", help="Show a machine's configuration")
    show.add_argument("name")

    create = sub.add_parser("create", help="Create a new virtual machine")
    create.add_argument("name")
    create.add_argument("--arch", default="x86_64")
    create.add_argument("--backend", default="qemu", choices=["qemu", "apple"])
    create.add_argument("--notes", default=None)
    create.add_argument("--disk-size", type=int, default=0, metavar="MIB", help="Create a blank disk of this size")
    create.add_argument("--raw", action="store_true", help="Create the blank disk as a raw image")
    create.add_argument("--drive", action="append", metavar="IMAGE", help="Import an existing disk or ISO image")
    create.add_argument("--cdrom", default=None, metavar="IMAGE", help="Attach removable media")

    for name, help_text in (
        ("delete", "Delete a machine and its files"),
        ("clone", "Copy a machine within storage"),
        ("template", "New machine with the same settings and no drives"),
    ):
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument("name")

    export = sub.add_parser("export", help="Copy a machine bundle to another location")
    export.add_argument("name")
    export.add_argument("destination", type=Path)

    move = sub.add_parser("move", help="Move a machine bundle and keep it as a shortcut")
    move.add_argument("name")
    move.add_argument("destination", type=Path)

    import_cmd = sub.add_parser("import", help="Open an existing machine bundle")
    import_cmd.add_argument("path", type=Path)
    import_cmd.add_argument("--copy", action="store_true", help="Copy into storage instead of linking")

    import_drive = sub.add_parser("import-drive", help="Attach an existing image file to a machine")
    import_drive.add_argument("name")
    import_drive.add_argument("image", type=Path)
    import_drive.add_argument("--type", dest="image_type", default=None, choices=DISK_IMAGE_TYPES)
    import_drive.add_argument("--interface", default=None, choices=DRIVE_INTERFACES)
    import_drive.add_argument("--convert", action="store_true", help="Convert to qcow2 while copying")
    import_drive.add_argument("--move", action="store_true", help="Move the file instead of copying it")

    create_drive = sub.add_parser("create-drive", help="Add a new drive to a machine")
    create_drive.add_argument("name")
    create_drive.add_argument("--size", type=int, default=0, metavar="MIB")
    create_drive.add_argument("--type", dest="image_type", default="disk", choices=DISK_IMAGE_TYPES)
    create_drive.add_argument("--interface", default=None, choices=DRIVE_INTERFACES)
    create_drive.add_argument("--raw", action="store_true")
    create_drive.add_argument("--removable", action="store_true")
    create_drive.add_argument("--source", type=Path, default=None, help="Media for a removable drive")

    remove_drive = sub.add_parser("remove-drive", help="Remove a drive and delete its image")
    remove_drive.add_argument("name")
    remove_drive.add_argument("drive")

    resize = sub.add_parser("resize", help="Resize a drive image")
    resize.add_argument("name")
    resize.add_argument("drive")
    resize.add_argument("size", type=int, metavar="MIB")

    reclaim = sub.add_parser("reclaim", help="Re-encode a drive image to reclaim unused space")
    reclaim.add_argument("name")
    reclaim.add_argument("drive")
    reclaim.add_argument("--compress", action="store_true")

    download = sub.add_parser("download", help="Download a zipped machine, or a disk image with --image-name")
    download.add_argument("url", help="Archive URL or vmkeeper://downloadVM?url=... link")
    download.add_argument("--image-name", default=None, metavar="NAME", help="Create NAME around a downloaded image")
    download.add_argument("--arch", default="x86_64")
    return parser


async def _run_command(library: Library, args: argparse.Namespace) -> Optional[Awaitable[Any]]:
    """Return the coroutine implementing ``args.command``, or None for read-only commands."""
    command = args.command
    if command == "list":
        list_machines(library)
        return None
    if command == "refresh":
        library.refresh()
        log("SUCCESS", f"{len(library.registry.machines)} machine(s) listed")
        return None
    if command == "show":
        show_machine(find_machine(library, args.name))
        return None
    if command == "create":
        return create_machine(library, args)
    if command == "import":
        return library.import_bundle(args.path, as_shortcut=not args.copy)
    if command == "download":
        if args.image_name:
            config = MachineConfig(name=args.image_name, arch=args.arch)
            library.downloads.start_image_download(config, args.url)
        elif args.url.startswith("vmkeeper:"):
            library.downloads.start_zip_download_from_link(args.url)
        else:
            library.downloads.start_zip_download(args.url)
        return None

    vm = find_machine(library, args.name)
    if command == "delete":
        return library.delete(vm)
    if command == "clone":
        return library.clone(vm)
    if command == "template":
        return library.template(vm)
    if command == "export":
        return library.export(vm, args.destination)
    if command == "move":
        return library.move(vm, args.destination)
    if command == "import-drive":
        convert = args.convert or library.settings.convert_on_import

        async def _import(session: EditSession) -> None:
            if args.image_type is None and args.interface is None and not convert:
                await library.drives.import_drive_auto(args.image, session, copy=not args.move)
                return
            image_type = args.image_type or "disk"
            await library.drives.import_drive(
                args.image,
                session,
                image_type=image_type,
                interface=args.interface or session.config.default_interface(image_type),
                raw=not convert,
                copy=not args.move,
            )

        return edit_and_save(library, vm, _import)
    if command == "create-drive":
        spec = DriveSpec(
            image_type=args.image_type,
            interface=args.interface,
            size_mib=args.size,
            removable=args.removable,
            raw=args.raw,
        )

        async def _create(session: EditSession) -> None:
            await library.drives.create_drive(spec, session, source=args.source)

        return edit_and_save(library, vm, _create)

    index = find_drive_index(vm, args.drive)
    if command == "remove-drive":

        async def _remove(session: EditSession) -> None:
            await library.drives.remove_drive(index, session)

        return edit_and_save(library, vm, _remove)
    image = vm.config.drive_image_path(index)
    if image is None:
        raise ManagerError(f"Drive '{args.drive}' has no image file")
    if command == "resize":
        return library.drives.resize_drive(image, args.size)
    if command == "reclaim":
        return library.drives.reclaim_space(image, compress=args.compress)
    raise ManagerError(f"Unknown command '{command}'")  # pragma: no cover


async def run_cli(settings: LibrarySettings, args: argparse.Namespace) -> int:
    library = Library(settings)
    library.refresh()
    work = await _run_command(library, args)
    if work is not None:
        library.tasks.run_busy(work)
    await library.tasks.drain()
    alert = library.tasks.acknowledge_alert()
    if alert is not None:
        return 1
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    try:
        settings = parse_env(args.config)
    except ManagerError as exc:
        log("ERROR", str(exc))
        return 1

    try:
        return asyncio.run(run_cli(settings, args))
    except ManagerError as exc:
        log("ERROR", str(exc))
        return 1
    except KeyboardInterrupt:
        log("WARN", "Interrupted")
        return 130
