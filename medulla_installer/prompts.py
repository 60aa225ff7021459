"""Questionary prompts and the interactive install wizard."""

from __future__ import annotations

import ipaddress

import questionary
from pydantic import SecretStr

from medulla_installer.core.exceptions import WizardAbort
from medulla_installer.core.models import InstallSession


def ask_text(message: str, *, default: str | None = None, required: bool = False) -> str:
    """Prompt for a text value, optionally enforcing a non-empty response."""

    prompt_default = default or ""
    while True:
        response = questionary.text(message, default=prompt_default).ask()
        if response is None:
            raise WizardAbort()
        result = response.strip()
        if result:
            return result
        if prompt_default and not required:
            return prompt_default
        if required:
            questionary.print("Value is required.", style="bold red")
            continue
        return ""


def ask_required_text(message: str, *, default: str | None = None) -> str:
    """Prompt for a required text value."""

    return ask_text(message, default=default, required=True)


def ask_secret(message: str) -> SecretStr:
    while True:
        response = questionary.password(message).ask()
        if response is None:
            raise WizardAbort()
        if response.strip():
            return SecretStr(response.strip())
        questionary.print("Value is required.", style="bold red")


def ask_ip(message: str, *, default: str | None = None) -> str:
    while True:
        value = ask_required_text(message, default=default)
        try:
            ipaddress.ip_address(value)
        except ValueError:
            questionary.print("Please enter a valid IP address.", style="bold red")
            continue
        return value


def ask_bool(message: str, *, default: bool) -> bool:
    """Prompt for a boolean via confirmation."""

    response = questionary.confirm(message, default=default).ask()
    if response is None:
        raise WizardAbort()
    return bool(response)


def run_wizard(session: InstallSession) -> None:
    """Ask the operator to confirm or override the discovered values."""

    if ask_bool(f"The default time zone is {session.timezone}. Do you want to change it?", default=False):
        session.timezone = ask_required_text("Define the new time zone:")
    session.root_password = ask_secret("Enter the password you wish to use for Medulla admin account:")
    if ask_bool("Does this server have a public IP?", default=session.public_ip is not None):
        session.public_ip = ask_ip("Enter the server's public IP:", default=session.public_ip)
    else:
        session.public_ip = None
    if ask_bool(f"The detected interface is {session.interface}. Do you want to change it?", default=False):
        session.interface = ask_required_text("Enter the new interface:")
    if ask_bool(f"The detected FQDN is {session.server_fqdn}. Do you wish to change it?", default=False):
        session.server_fqdn = ask_required_text("Enter the server's FQDN:")


__all__ = [
    "WizardAbort",
    "ask_bool",
    "ask_ip",
    "ask_required_text",
    "ask_secret",
    "ask_text",
    "run_wizard",
]
