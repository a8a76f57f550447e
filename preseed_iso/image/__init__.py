"""ISO 9660, boot archive and boot menu manipulation.

Main Functions:
    - extract_image() / compose_image(): ISO 9660 tree in and out (iso.py)
    - locate_boot_archive(), unpack_boot_archive(), inject_payload(),
      repack_boot_archive(): initrd handling (initrd.py)
    - configure_boot_menus(): ISOLINUX and GRUB menus (boot_menu.py)
    - regenerate_manifest(): md5sum.txt (checksums.py)
    - acquire_lock(), release_lock(), cleanup_scratch(): scratch lifecycle (workspace.py)
"""
