"""
Assets and inventory numbering rules.
"""

