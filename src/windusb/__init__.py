"""
WindUSB - Bootable Windows installer media creator.

Turns a removable block device into a bootable Windows installer from a
disc image by orchestrating standard Linux disk tools.
"""

__version__ = "1.0.0"
__author__ = "WindUSB Team"

from windusb.core.config import WindUSBConfig
from windusb.core.pipeline import FlashPipeline

__all__ = ["WindUSBConfig", "FlashPipeline", "__version__"]
