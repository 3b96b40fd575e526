"""
Peasant Budget - Storage Package

The persistence layer of a personal budgeting application.
Budget data is stored wherever the user chooses: on this device or in
their own cloud storage.

DESIGN PRINCIPLES:
1. User owns their data, stored where they choose
2. Storage backends are swappable behind one contract
3. No failure silently discards user-entered data
4. Secrets never leave memory and are never logged
"""

__version__ = "1.0.0"
__author__ = "Peasant Budget Team"
