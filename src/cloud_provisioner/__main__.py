"""Module entrypoint for ``python -m cloud_provisioner``."""

from __future__ import annotations

from cloud_provisioner.main import cli_entrypoint

if __name__ == "__main__":
    raise SystemExit(cli_entrypoint())
