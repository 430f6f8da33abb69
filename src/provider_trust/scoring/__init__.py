"""
Confidence scoring and crowd verification intake.
"""
