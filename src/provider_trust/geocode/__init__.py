"""
Geocoding of practice addresses, one API call per unique address.
"""
