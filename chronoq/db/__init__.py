"""
Database models and the async session factory used by the SQL job store.
"""
