"""
Materialized view refresh package.
"""
