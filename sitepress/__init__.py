"""Site export service: pages, page lists or crawled sites to a PDF or an image ZIP."""

__version__ = "1.0.0"
