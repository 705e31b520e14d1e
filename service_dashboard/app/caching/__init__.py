"""
Dashboard caching package.

Short-lived, in-process response caching keyed by endpoint, caller scope and
request parameters. Entries expire on their own; nothing is invalidated
explicitly.
"""
