"""Reading-interval aggregation core: merge engine, ingestion, ranking cache, admission."""
