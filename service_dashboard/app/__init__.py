"""
Organizing dashboard worker package.

Serves cached, aggregated project and dashboard data backed by Supabase,
and keeps the database's materialized views fresh on a cron schedule.

Structure:
- app.main: FastAPI app, query handlers and lifecycle wiring.
- app.caching: In-process TTL cache and cache key construction.
- app.refresh: Cron-driven and on-demand materialized view refreshes.
- app.adapters: Supabase REST (PostgREST/GoTrue) client.
- app.domain: Auth checks, project listing and dashboard aggregation.
"""
