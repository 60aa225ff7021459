"""Operator-facing console output: progress, diagnostics and final report."""

from __future__ import annotations

import questionary

from medulla_installer.core.models import InstallSession, VMDescriptor

AGENT_DOWNLOAD_PATH = "/downloads/win/Medulla-Agent-windows-FULL-latest.exe"
_MASK = "********"


def colored_echo(color: str, text: str) -> None:
    questionary.print(text, style=f"bold {color}")


def display_error_message(text: str, command: str | None = None) -> None:
    colored_echo("red", f"### {text}. Exiting")
    if command:
        colored_echo("red", f"Failed command: {command}")
    colored_echo(
        "red",
        "If more control on the installation is needed, download the installer "
        "and run the installation in interactive mode.",
    )
    colored_echo("red", 'Please refer to the "Other options" section in the provided documentation.')


def display_summary(session: InstallSession) -> None:
    colored_echo("blue", "Medulla will be installed with the following parameters:")
    colored_echo("blue", f"- SERVER_FQDN: {session.server_fqdn or ''}")
    colored_echo("blue", f"- TIMEZONE: {session.timezone}")
    colored_echo("blue", f"- ROOT_PASSWORD: {_MASK if session.root_password else ''}")
    colored_echo("blue", f"- PLAYBOOK_URL: {session.playbook_url or ''}")
    colored_echo("blue", f"- PUBLIC_IP: {session.public_ip or ''}")
    colored_echo("blue", f"- INTERFACE: {session.interface or ''}")
    if session.create_vm:
        colored_echo("blue", "- CREATE_VM: yes")


def final_message_lines(session: InstallSession) -> list[str]:
    password = session.root_password.get_secret_value() if session.root_password else ""
    lines = [
        "### Medulla installed successfully",
        "# ",
        f"# To access Medulla, point your browser to http://{session.server_fqdn}",
        f"# and log on using root / {password}",
        "# ",
    ]
    if not session.public_ip:
        lines += [
            "# Please note that clients outside the LAN will not be able to connect",
            "# as no public IP address is defined",
        ]
    lines += [
        "# ",
        "# The client agent can be downloaded from",
        f"# http://{session.server_fqdn}{AGENT_DOWNLOAD_PATH}",
        "# ",
        "# Step 1:",
        "# Download the agent from the URL above and install it on your Windows clients",
        "# ",
        "# Step 2:",
        "# Once the install is complete, the Windows machines need to be restarted",
        "# ",
        "# Step 3:",
        "# Once restarted the Windows machines will connect to Medulla to complete their",
        "# setup then go online on Medulla console in the Computers page. This phase can",
        "# take up to 20 minutes depending on the bandwidth between the client machine",
        "# and Medulla server.",
        "# Once a machine is online and inventoried, it can be managed by Medulla.",
        "# ",
        "###",
    ]
    return lines


def display_final_message(session: InstallSession) -> None:
    for line in final_message_lines(session):
        colored_echo("green", line)


def display_cleanup_advice(vm: VMDescriptor) -> None:
    colored_echo("yellow", f"# The virtual machine {vm.name} ({vm.reference}) is left registered.")
    colored_echo("yellow", "# Once it is no longer needed, remove it with:")
    colored_echo("yellow", f"#   VBoxManage unregistervm {vm.reference} --delete")


__all__ = [
    "AGENT_DOWNLOAD_PATH",
    "colored_echo",
    "display_cleanup_advice",
    "display_error_message",
    "display_final_message",
    "display_summary",
    "final_message_lines",
]
