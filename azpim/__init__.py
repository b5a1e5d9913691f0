"""
Command line tool for Azure Privileged Identity Management (PIM) roles.
"""

__version__ = "0.1.0"
