# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# vmdiskman/cli/help_texts.py
from __future__ import annotations

# NOTE:
# Pure help text for the argparse epilog. Keep it copy/paste runnable and
# free of imports.

YAML_EXAMPLE = r"""# vmdiskman configuration (YAML or JSON)
#
# Run:
# sudo vmdiskman --config disk.yaml resize
#
# Merge multiple configs (later overrides earlier):
# sudo vmdiskman --config base.yaml --config host.yaml inspect guest.qcow2
#
# Two-phase parse: --config and logging flags are read first, the merged
# file becomes the argparse defaults, then the full command line wins.
#
# cmd: resize                  # inspect | resize | mount | cleanup
# image: /var/lib/libvirt/images/guest.qcow2
# size: 40G                    # absolute, or +10G to add
# format: qcow2                # raw | qcow2 | vpc | vhdx | vmdk (probed if omitted)
# partition: 2                 # default: the last partition
# lv: vg0/root                 # LV to grow when the PV holds several
# backup: true                 # sparse copy of the image before resizing
# assume_yes: false            # answer yes to every confirmation
#
# LUKS:
# luks_passphrase_env: GUEST_LUKS_PASS
# luks_keyfile: /root/keys/guest.key
# keyfile_dir: /run/vmdiskman  # tmpfs for the short-lived key file
#
# NBD attach:
# nbd_max_devices: 16
# attach_retries: 3
# attach_timeout_s: 30
# poll_attempts: 10
# poll_interval_s: 0.5
# settle_delay_s: 1.0
#
# Unlock:
# unlock_max_attempts: 3
# unlock_timeout_s: 30
#
# Misc:
# mount_root: /mnt
# sweep: true                  # release orphans of dead sessions before attaching
# log_dir: /var/log/vmdiskman  # one session-<ts>-<pid>.log per run
"""

FEATURE_SUMMARY = """ • Attach raw/qcow2/vhd/vhdx/vmdk images as NBD block devices (qemu-nbd)
 • Partition and filesystem inspection (parted, lsblk, blkid, file, fsck)
 • LUKS unlock with bounded retries; passphrase, env var or keyfile
 • LVM activation with conflict detection, pvresize + lvextend
 • Grow the last partition (sgdisk on GPT, parted on MBR) and its filesystem
   (ext2/3/4, NTFS, btrfs; XFS and others get manual instructions)
 • Strict reverse-order teardown on success, failure, SIGINT, SIGTERM or SIGHUP
 • 'cleanup' releases what crashed sessions left behind
"""

EXIT_CODES = """ 0    success, or the operator declined
 10   precondition not met (file in use, bad input, not last partition, ...)
 20   transient failure persisted past its retry bound
 30   structural failure (partition table or filesystem change failed)
 40   teardown left resources behind; run 'vmdiskman cleanup'
 130  interrupted
"""
