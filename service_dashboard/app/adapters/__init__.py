"""
Adapters package for the dashboard worker.

Contains the HTTP client wrapper for Supabase. The adapter encapsulates:
- PostgREST query building and count parsing
- GoTrue user lookup for bearer tokens
- Error normalization into SupabaseError
- Circuit breaking for transport failures
"""
