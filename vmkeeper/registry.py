"""Ordered machine list, pending downloads and the persisted list record."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Callable, Iterable, List, Optional

from vmkeeper.constants import LIST_PREFERENCES_KEY
from vmkeeper.exceptions import StaleMachineError
from vmkeeper.machine import Machine, PendingMachine, PlaceholderMachine
from vmkeeper.preferences import Preferences
from vmkeeper.utils import directory_size, file_size, log, same_path

Listener = Callable[[], None]


class MachineRegistry:
    """Owns the machine list and the pending download list.

    All methods must be called from the event loop thread; nothing here is
    locked. Every list mutation is written back to the preferences store
    under ``VMList`` and announced to subscribers.
    """

    def __init__(self, storage_dir: Path, preferences: Preferences) -> None:
        self.storage_dir = storage_dir
        self.preferences = preferences
        self.machines: List[Any] = []
        self.pending: List[PendingMachine] = []
        self.selected: Optional[Any] = None
        self._listeners: List[Listener] = []
        self.load()

    # -- observers -----------------------------------------------------

    def subscribe(self, callback: Listener) -> Callable[[], None]:
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def _notify(self) -> None:
        for callback in list(self._listeners):
            try:
                callback()
            except Exception as exc:  # noqa: BLE001
                log("WARN", f"Registry listener failed: {exc}")

    def _changed(self) -> None:
        self.save()
        self._notify()

    # -- persistence ---------------------------------------------------

    def load(self) -> None:
        entries = self.preferences.get(LIST_PREFERENCES_KEY)
        if entries is None:
            return
        if not isinstance(entries, list):
            log("WARN", f"Ignoring malformed '{LIST_PREFERENCES_KEY}' record")
            return
        if entries and all(isinstance(item, str) for item in entries):
            self.machines = self._load_legacy(entries)
        else:
            self.machines = [vm for vm in (self._load_entry(item) for item in entries) if vm is not None]
        log("DEBUG", f"Loaded {len(self.machines)} machine(s) from {self.preferences.path}")

    def _load_legacy(self, entries: List[str]) -> List[Any]:
        machines = []
        seen = set()
        for name in entries:
            if name in seen:
                continue
            seen.add(name)
            try:
                machines.append(Machine.from_path(self.storage_dir / name))
            except StaleMachineError as exc:
                log("WARN", f"Dropping legacy list entry '{name}': {exc}")
        return machines

    def _load_entry(self, item: Any) -> Optional[Any]:
        placeholder = PlaceholderMachine.from_reference(item)
        if placeholder is None:
            log("WARN", f"Dropping unreadable list entry {item!r}")
            return None
        vm = placeholder.unwrap()
        if vm is None:
            return placeholder
        if vm.is_shortcut and not vm.supports_shortcut:
            log("WARN", f"Dropping unsupported shortcut to '{vm.name}'")
            return None
        return vm

    def save(self) -> None:
        record = []
        for vm in self.machines:
            placeholder = PlaceholderMachine.for_machine(vm)
            if placeholder is not None:
                record.append(placeholder.reference())
        self.preferences.set(LIST_PREFERENCES_KEY, record)

    # -- reconciliation ------------------------------------------------

    def refresh(self) -> None:
        """Reconcile the list with the storage directory.

        Vanished bundles become placeholders, new bundles in storage are
        prepended. The list is swapped in one assignment, and only when it changed.
        """
        updated = list(self.machines)
        for i in reversed(range(len(updated))):
            vm = updated[i]
            if vm.path is not None and vm.path.exists():
                continue
            placeholder = PlaceholderMachine.for_machine(vm)
            if placeholder is not None:
                updated[i] = placeholder
            else:
                del updated[i]

        try:
            candidates = sorted(self.storage_dir.iterdir()) if self.storage_dir.exists() else []
        except OSError as exc:
            log("ERROR", f"Failed to scan {self.storage_dir}: {exc}")
            candidates = []
        for candidate in candidates:
            if candidate.name.startswith("."):
                continue
            if any(same_path(vm.path, candidate) for vm in updated):
                continue
            if not Machine.is_bundle(candidate):
                continue
            try:
                vm = Machine.from_path(candidate)
            except StaleMachineError as exc:
                log("ERROR", f"Failed to load {candidate}: {exc}")
                continue
            updated.insert(0, vm)

        if not self._same_entries(updated):
            self.machines = updated
            self._changed()

    def _same_entries(self, other: List[Any]) -> bool:
        if len(other) != len(self.machines):
            return False
        return all(a is b for a, b in zip(other, self.machines))

    # -- list operations -----------------------------------------------

    def add(self, vm: Any, index: Optional[int] = None) -> None:
        if index is None:
            self.machines.append(vm)
        else:
            self.machines.insert(index, vm)
        self._changed()

    def remove(self, vm: Any) -> Optional[int]:
        index = self.index_of(vm)
        if index is not None:
            del self.machines[index]
        if self.selected is vm:
            self.selected = None
        vm.is_deleted = True
        if index is not None:
            self._changed()
        return index

    def replace(self, index: int, vm: Any) -> None:
        self.machines[index] = vm
        self._changed()

    def move(self, from_offsets: Iterable[int], to_offset: int) -> None:
        """Move the items at ``from_offsets`` so they land before the item at ``to_offset``."""
        offsets = sorted(set(from_offsets))
        if any(i < 0 or i >= len(self.machines) for i in offsets):
            raise IndexError("move offset out of range")
        moving = [self.machines[i] for i in offsets]
        remaining = [vm for i, vm in enumerate(self.machines) if i not in offsets]
        target = to_offset - sum(1 for i in offsets if i < to_offset)
        self.machines = remaining[:target] + moving + remaining[target:]
        self._changed()

    def select(self, vm: Optional[Any]) -> None:
        self.selected = vm
        self._notify()

    def index_of(self, vm: Any) -> Optional[int]:
        for i, item in enumerate(self.machines):
            if item is vm:
                return i
        return None

    def find_by_path(self, path: Path) -> Optional[Any]:
        for vm in self.machines:
            if same_path(vm.path, path):
                return vm
        return None

    def find_by_name(self, name: str) -> Optional[Any]:
        for vm in self.machines:
            if vm.name == name:
                return vm
        return None

    def contains_name(self, name: str) -> bool:
        """True when a non-shortcut machine already uses ``name``."""
        return any(not vm.is_shortcut and vm.name == name for vm in self.machines)

    # -- pending downloads ---------------------------------------------

    def add_pending(self, pending: PendingMachine, index: Optional[int] = None) -> None:
        if index is None:
            self.pending.append(pending)
        else:
            self.pending.insert(index, pending)
        self._notify()

    def remove_pending(self, pending: PendingMachine) -> Optional[int]:
        for i, item in enumerate(self.pending):
            if item.id == pending.id:
                del self.pending[i]
                self._notify()
                return i
        return None

    # -- sizes -----------------------------------------------------------

    @staticmethod
    def compute_size(vm: Any) -> int:
        if vm.path is None or not vm.path.exists():
            return 0
        return directory_size(vm.path)

    @staticmethod
    def compute_file_size(path: Path) -> int:
        return file_size(path)
