#!/usr/bin/env python3
# SPDX-License-Identifier: LGPL-3.0-or-later
"""
Example: grow an encrypted guest disk with the vmdiskman library.

This example demonstrates:
- Growing the image file before it is attached
- Attaching the image over NBD and listing its partitions
- Unlocking a LUKS partition with a passphrase from the environment
- Activating LVM and growing partition, LUKS mapping, LV and filesystem

Every layer is released in reverse order when the session ends, including
on Ctrl+C.

Usage (as root):
    GUEST_PASSPHRASE=... python library_encrypted_resize.py /vm/guest.qcow2 40G
"""

import sys
import logging

from vmdiskman import DiskSession, ProcessRunner, StaticCredentialProvider
from vmdiskman.cli.args.validators import parse_size
from vmdiskman.disk.models import FilesystemKind

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def grow_encrypted_disk(image: str, size: str) -> bool:
    target, relative = parse_size(size)
    if relative:
        logger.error("Pass an absolute size for this example")
        return False

    runner = ProcessRunner(logger)
    with DiskSession(runner, logger) as session:
        r = session.prepare_image(image, target)
        if not r.ok:
            return False

        device, r = session.attach(image)
        if not r.ok:
            return False

        entries = session.inspect_partitions(device)
        last = [e for e in entries if e.is_last][0]
        logger.info(f"Last partition: {last.index} ({last.fs_kind.value})")

        if last.fs_kind == FilesystemKind.LUKS:
            creds = StaticCredentialProvider(None, env="GUEST_PASSPHRASE")
            part = session.inspector.partition_path(device, last.index)
            mapper, r = session.unlock(part, creds)
            if not r.ok:
                return False
            if session.inspector.detect(mapper) == FilesystemKind.LVM:
                lvs, r = session.activate_volume_groups(mapper)
                if not r.ok:
                    return False
                logger.info(f"Active LVs: {', '.join(lv.path for lv in lvs)}")

        r = session.resize(device, last.index, target)
        logger.info(f"Resize outcome: {r.outcome.value if r.outcome else 'failed'} - {r.message}")
        for w in r.warnings:
            logger.warning(w)
        return r.ok


def main():
    if len(sys.argv) != 3:
        print(f"Usage: {sys.argv[0]} <image> <size>")
        print()
        print("Example:")
        print(f"  GUEST_PASSPHRASE=secret {sys.argv[0]} /vm/guest.qcow2 40G")
        sys.exit(1)

    ok = grow_encrypted_disk(sys.argv[1], sys.argv[2])
    sys.exit(0 if ok else 1)


if __name__ == "__main__":
    main()
