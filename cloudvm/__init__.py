"""Manage local QEMU VMs built from cloud images."""

__version__ = '0.1.0'
