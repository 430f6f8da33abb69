"""
Relational store and keyset pagination.
"""
