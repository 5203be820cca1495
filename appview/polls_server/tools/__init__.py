"""
Operational tools for the polls AppView.
"""
