"""
Concord - Collaborative queue & quorum-voting engine for the office PWA
Main package initialization
"""

from .version import VERSION, get_app_info, get_version

__version__ = VERSION
__all__ = ['VERSION', 'get_version', 'get_app_info']
