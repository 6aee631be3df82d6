# secret_store.py
"""
Process-wide credential holder.

Secrets are never part of a Job/Step definition: steps reference them by
name and the engine resolves them at dispatch time. Values are kept only in
memory and every string that leaves the engine (console, step logs) goes
through `redact`.
"""
from __future__ import annotations

import os
import re
import threading
from typing import Dict, Iterable, Mapping, Optional

from .model import SECRET_REF

ENV_PREFIX = "GATECI_SECRET_"
MASK = "***"

_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class SecretStore:
    def __init__(self, values: Optional[Mapping[str, str]] = None):
        self._values: Dict[str, str] = {}
        self._lock = threading.Lock()
        for name, value in (values or {}).items():
            self.set(name, value)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> SecretStore:
        """Load every GATECI_SECRET_<NAME> variable as secret <NAME>."""
        environ = os.environ if environ is None else environ
        store = cls()
        for key, value in environ.items():
            if key.startswith(ENV_PREFIX) and len(key) > len(ENV_PREFIX):
                store.set(key[len(ENV_PREFIX):], value)
        return store

    def set(self, name: str, value: str) -> None:
        if not _NAME.match(name):
            raise ValueError(f"Invalid secret name: {name!r}")
        with self._lock:
            self._values[name] = str(value)

    def has(self, name: str) -> bool:
        with self._lock:
            return name in self._values

    def get(self, name: str) -> Optional[str]:
        with self._lock:
            return self._values.get(name)

    def names(self) -> list[str]:
        with self._lock:
            return sorted(self._values)

    def resolve(self, names: Iterable[str]) -> Dict[str, str]:
        """
        Return {name: value} for the requested names.
        Raises KeyError with the first missing name; the caller turns it
        into a SecretMissingError with job/step context.
        """
        out: Dict[str, str] = {}
        with self._lock:
            for name in sorted(set(names)):
                if name not in self._values:
                    raise KeyError(name)
                out[name] = self._values[name]
        return out

    def redact(self, text: str) -> str:
        if not text:
            return text
        with self._lock:
            # longest first so overlapping values are fully masked
            values = sorted((v for v in self._values.values() if v), key=len, reverse=True)
        for v in values:
            text = text.replace(v, MASK)
        return text

    def __repr__(self) -> str:
        return f"SecretStore(names={self.names()})"


def substitute(text: str, resolved: Mapping[str, str]) -> str:
    """Replace ${{ secrets.NAME }} placeholders with resolved values."""
    return SECRET_REF.sub(lambda m: resolved[m.group(1)], text)
