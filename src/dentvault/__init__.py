"""DentVault - backup and restore for the dental clinic database and images"""

__version__ = "4.0.0"
