"""
pma-up - unattended in-place upgrades of a phpMyAdmin installation.

This package downloads the latest release, unpacks it, backs up the live
installation, swaps the new tree into place and restores the site's
configuration file.
"""

__version__ = "0.1.0"
