from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Mapping, Optional, Set, Tuple

from .errors import ParameterProfileNotFound, UnknownParameterError


class ParameterSet:
    """Request options split into defaults, active values and the modified subset.

    Only modified keys are transmitted. Command-scoped overrides snapshot
    ``active``/``modified`` and restore them exactly when the scope ends.
    """

    def __init__(
        self,
        defaults: Mapping[str, Any],
        profiles: Optional[Mapping[str, Mapping[str, Any]]] = None,
    ) -> None:
        self.defaults: Dict[str, Any] = dict(defaults)
        self.profiles: Dict[str, Dict[str, Any]] = {name: dict(values) for name, values in (profiles or {}).items()}
        self.active: Dict[str, Any] = dict(self.defaults)
        self.modified: Set[str] = set()
        self.active_profile: Optional[str] = None
        self._saved: List[Tuple[Dict[str, Any], Set[str], Optional[str]]] = []

    @property
    def scoped(self) -> bool:
        return bool(self._saved)

    def set(self, name: str, value: Any) -> None:
        if name not in self.defaults:
            raise UnknownParameterError(name)
        self.active[name] = value
        if value == self.defaults[name]:
            self.modified.discard(name)
        else:
            self.modified.add(name)

    def update(self, values: Mapping[str, Any]) -> None:
        self.validate(values)
        for name, value in values.items():
            self.set(name, value)

    def reset(self) -> None:
        self.active = dict(self.defaults)
        self.modified = set()
        self.active_profile = None

    def apply_profile(self, overrides: Mapping[str, Any]) -> None:
        self.validate(overrides)
        self.reset()
        for name, value in overrides.items():
            self.set(name, value)

    def apply_named_profile(self, name: str) -> None:
        if name not in self.profiles:
            raise ParameterProfileNotFound(name)
        self.apply_profile(self.profiles[name])
        self.active_profile = name

    def apply_command_parameters(self, overrides: Mapping[str, Any]) -> None:
        self.validate(overrides)
        self._saved.append((dict(self.active), set(self.modified), self.active_profile))
        for name, value in overrides.items():
            self.set(name, value)

    def restore_command_parameters(self) -> bool:
        if not self._saved:
            return False
        self.active, self.modified, self.active_profile = self._saved.pop()
        return True

    @contextmanager
    def command_scope(self, overrides: Optional[Mapping[str, Any]]) -> Iterator[None]:
        if not overrides:
            yield
            return
        self.apply_command_parameters(overrides)
        try:
            yield
        finally:
            self.restore_command_parameters()

    def carry_over(self, previous: "ParameterSet") -> None:
        """Re-apply another set's modified values that are still known here.

        Command-scoped overrides on ``previous`` are not carried.
        """
        if previous._saved:
            active, modified, profile = previous._saved[0]
        else:
            active, modified, profile = previous.active, previous.modified, previous.active_profile
        if profile in self.profiles:
            self.apply_named_profile(profile)
        for name in modified:
            if name in self.defaults:
                self.set(name, active[name])

    def get_modified_for_request(self) -> Dict[str, Any]:
        return {name: self.active[name] for name in self.defaults if name in self.modified}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "active": dict(self.active),
            "modified": self.get_modified_for_request(),
            "profile": self.active_profile,
            "profiles": sorted(self.profiles),
        }

    def validate(self, values: Mapping[str, Any]) -> None:
        for name in values:
            if name not in self.defaults:
                raise UnknownParameterError(name)
