"""
Deploy Toolkit - build, package, install and debug native apps on host,
Android and Apple devices.
"""

__version__ = "0.1.0"
