import pytest


def pytest_addoption(parser: pytest.Parser) -> None:
    """
    Registers custom command-line (CLI) options for pytest.

    Adds options to configure emulator sessions:
      --devemu-config <path> : Path to the devemu YAML configuration file.
      --devemu-only <kinds>  : Comma-separated emulators to run for the session.

    These options are used by the devemu fixtures to load settings.
    """
    g = parser.getgroup("devemu")
    g.addoption(
        "--devemu-config",
        action="store",
        default=None,
        help="Path to devemu YAML configuration file",
    )
    g.addoption(
        "--devemu-only",
        action="store",
        default=None,
        help="Comma-separated emulators to run, e.g. database,functions",
    )
