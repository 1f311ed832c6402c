from __future__ import annotations

from enum import Enum


class EmulatorKind(str, Enum):
    """
    Enumeration of the cloud services that can be emulated locally.

    Used as the identity of an emulator across configuration, the
    session registry, and log records. Declaration order is the order in
    which a session declares its emulators.
    """

    FUNCTIONS = "functions"
    FIRESTORE = "firestore"
    DATABASE = "database"
    HOSTING = "hosting"


# Ports the emulators listen on unless the configuration says otherwise
DEFAULT_PORTS: dict[EmulatorKind, int] = {
    EmulatorKind.FUNCTIONS: 5001,
    EmulatorKind.FIRESTORE: 8080,
    EmulatorKind.DATABASE: 9000,
    EmulatorKind.HOSTING: 5000,
}


def parse_kinds(raw: str | None) -> list[EmulatorKind] | None:
    """
    Parse a comma-separated emulator selection such as "functions, hosting".

    Returns None when nothing is selected, meaning every enabled emulator.

    Raises:
        ValueError: A name is not a known emulator kind.
    """
    if not raw:
        return None
    kinds: list[EmulatorKind] = []
    for part in raw.split(","):
        name = part.strip().lower()
        if not name:
            continue
        try:
            kinds.append(EmulatorKind(name))
        except ValueError:
            valid = ", ".join(k.value for k in EmulatorKind)
            raise ValueError(f"unknown emulator '{name}' (expected: {valid})") from None
    return kinds or None
