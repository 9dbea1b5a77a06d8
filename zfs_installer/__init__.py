from zfs_installer.main import main as main
