"""Syntropy Cooperative Grid node provisioning toolchain"""

__version__ = '0.3.0'
