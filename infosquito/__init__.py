"""Keep an Elasticsearch index in step with ICAT objects, DE metadata and tags."""

__version__ = "0.1.0"