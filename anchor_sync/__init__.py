"""
anchor-sync - Copy a stable identifier between attributes of Active Directory objects.

This package propagates an immutable identifier (by default objectGUID) into a
target attribute (by default mS-DS-ConsistencyGuid) on people and groups, so
identity synchronization tools can join on-premises and cloud objects.
"""

__version__ = "1.0.0"
__author__ = "Anchor Sync Team"
