"""Typer CLI entrypoint for the Medulla installer."""

from __future__ import annotations

import asyncio
from typing import Annotated

import typer
from pydantic import ValidationError
from typer import Option

from medulla_installer.core.bootstrap import run_bootstrap
from medulla_installer.core.config import load_config
from medulla_installer.core.exceptions import ConfigError
from medulla_installer.core.models import InstallSession
from medulla_installer.core.report import colored_echo
from medulla_installer.models import CLIOptions
from medulla_installer.utils import configure_logging

app = typer.Typer(help="Install Medulla on this machine or in a new VirtualBox guest", add_completion=False)


@app.command(context_settings={"allow_extra_args": True, "ignore_unknown_options": True})
def install(
    ctx: typer.Context,
    nostandalone: Annotated[
        bool, Option("--nostandalone", help="Use the playbook found in the current directory")
    ] = False,
    interactive: Annotated[bool, Option("--interactive", help="Confirm every value in a wizard")] = False,
    timezone: Annotated[str | None, Option("--timezone", help="Server's timezone, eg. Europe/Paris")] = None,
    playbook_url: Annotated[str | None, Option("--playbook-url", help="Playbook tarball URL")] = None,
    medulla_root_pw: Annotated[
        str | None, Option("--medulla-root-pw", help="Medulla root password", show_default=False)
    ] = None,
    public_ip: Annotated[str | None, Option("--public-ip", help="Public IP if available")] = None,
    interface: Annotated[
        str | None, Option("--interface", help="Interface used to connect to the clients")
    ] = None,
    server_fqdn: Annotated[str | None, Option("--server-fqdn", help="FQDN of server")] = None,
    create_vm: Annotated[
        bool, Option("--create-vm/--no-create-vm", help="Install inside a new VirtualBox guest")
    ] = False,
    config: Annotated[str | None, Option("--config", "-c", help="Installer configuration file")] = None,
    verbose: Annotated[bool, Option("--verbose", "-v", help="Enable verbose logging")] = False,
) -> None:
    if ctx.args:
        typer.echo(ctx.get_help())
        raise typer.Exit(code=0)

    configure_logging(verbose)
    try:
        options = CLIOptions(
            nostandalone=nostandalone,
            interactive=interactive,
            timezone=timezone,
            playbook_url=playbook_url,
            medulla_root_pw=medulla_root_pw,
            public_ip=public_ip,
            interface=interface,
            server_fqdn=server_fqdn,
            create_vm=create_vm,
            config=config,
            verbose=verbose,
        )
        overrides = options.to_overrides()
        installer_config = load_config(options.config)
    except ValidationError as exc:
        colored_echo("red", f"### Invalid arguments: {exc}")
        raise typer.Exit(code=1) from exc
    except ConfigError as exc:
        colored_echo("red", f"### {exc}")
        raise typer.Exit(code=1) from exc

    session = InstallSession.from_settings(installer_config.install)
    exit_code = asyncio.run(run_bootstrap(session, overrides, config=installer_config))
    raise typer.Exit(code=exit_code)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
