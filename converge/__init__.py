"""
stackconverge: declarative reconciliation of an all-in-one OpenStack,
Ceph and OVN host.
"""

__version__ = "0.1.0"
