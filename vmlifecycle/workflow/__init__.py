"""
Provisioning, update, migration and rollback workflow
"""
