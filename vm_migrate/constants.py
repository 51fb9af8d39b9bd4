"""Centralized constants for vm-migrate."""

# SSH Configuration Options
SSH_NO_HOST_CHECK = "StrictHostKeyChecking=no"
SSH_NO_KNOWN_HOSTS = "UserKnownHostsFile=/dev/null"
SSH_ERROR_LOG_LEVEL = "LogLevel=ERROR"
SSH_BATCH_MODE = "BatchMode=yes"

# ZFS
ZFS_UNSET = "-"
DATASET_TYPE_VOLUME = "volume"

# volsize/volblocksize travel with the stream and are rejected by `zfs recv -o`
VOLUME_PRESERVED_PROPERTIES = ("sync",)
FILESYSTEM_PRESERVED_PROPERTIES = ("quota", "recordsize", "mountpoint", "sharenfs", "sync")

# VM inventory flags
DO_NOT_INVENTORY = "do_not_inventory"
INDESTRUCTIBLE_ZONEROOT = "indestructible_zoneroot"
INDESTRUCTIBLE_DELEGATED = "indestructible_delegated"

# Record files
RECORD_PREFIX = ".vm-migration."
BACKUP_SUFFIX = ".backup"
