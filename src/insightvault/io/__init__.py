"""Row storage and dataset ingestion."""
