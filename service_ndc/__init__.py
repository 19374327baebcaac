"""
NDC distribution service.
"""
