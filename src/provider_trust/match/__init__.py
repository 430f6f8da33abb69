"""
Fuzzy matching of free-text insurance network names to plans.
"""
