"""Job stores: Postgres for production, in-memory for tests and single-process use."""
