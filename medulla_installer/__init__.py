"""Medulla installer: provisions a Medulla server through Ansible."""

__version__ = "0.1.0"
