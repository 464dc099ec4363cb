"""idm-provision CLI - Main entrypoint.

Usage:
    idm-provision sync --url https://idm.example.com --state state.json
    idm-provision validate --state state.json
    idm-provision status --url https://idm.example.com
"""

from __future__ import annotations

from idm.provision.cli.commands import provision_app

app = provision_app


def create_app() -> None:
    """CLI entrypoint."""
    app()


if __name__ == "__main__":
    create_app()
