"""CareIQ calendar sync engine"""

__version__ = '0.1.0'
