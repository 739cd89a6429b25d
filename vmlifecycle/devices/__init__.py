"""
Device descriptors, reconciliation and translation
"""
