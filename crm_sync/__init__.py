"""
crm_sync - CRM synchronization engine for 1031 exchange case management.

Pulls contacts, matters and tasks from the practice-management CRM and
reconciles them into the local relational schema.
"""

__version__ = "0.1.0"
