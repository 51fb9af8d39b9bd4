"""vm-migrate: move zone/hypervisor VM instances between compute nodes."""

__version__ = "0.1.0"
