"""Backup, point-in-time restore and resource validation for MySQL clusters."""

__version__ = "0.1.0"