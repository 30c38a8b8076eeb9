from typing import FrozenSet, Iterable, Sequence, Tuple, Union

from .errors import ConfigurationError

DEFAULT_SENSITIVE_PREFIXES = (
    "profile",
    "cloud token",
    "cloud account grant",
)

PathLike = Union[str, Sequence[str]]

def split_path(path: PathLike) -> Tuple[str, ...]:
    """Normalizes a command path into its segments. Runs of whitespace count as one separator."""
    if isinstance(path, str):
        return tuple(path.split())
    return tuple(seg for part in path for seg in str(part).split())

class SecurityPolicy:
    """Decides whether a command path is sensitive.

    A path is sensitive when it equals, or descends from, one of the denied
    prefixes. Matching is done on whole segments, so "profile" denies
    "profile add" but not "profiler-utils".
    """

    def __init__(self, prefixes: Iterable[PathLike] = DEFAULT_SENSITIVE_PREFIXES):
        denied = set()
        for prefix in prefixes:
            segments = split_path(prefix)
            if not segments:
                raise ConfigurationError(f"Empty sensitive prefix in denylist: {prefix!r}")
            denied.add(segments)
        self._prefixes: FrozenSet[Tuple[str, ...]] = frozenset(denied)

    @property
    def prefixes(self) -> Tuple[str, ...]:
        return tuple(sorted(" ".join(p) for p in self._prefixes))

    def is_sensitive(self, path: PathLike) -> bool:
        segments = split_path(path)
        for prefix in self._prefixes:
            if segments[:len(prefix)] == prefix:
                return True
        return False

    def __repr__(self) -> str:
        return f"SecurityPolicy({list(self.prefixes)!r})"
