"""
Domain logic for the dashboard worker.

Request processing that sits between the HTTP handlers and the Supabase
adapter: caller authorization, project list filtering and dashboard
aggregation.
"""
