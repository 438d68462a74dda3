"""
CatalogHarvest - interruptible product catalog harvesting service.

Collects product cards for batches of catalog articles in the background,
streams progress to observers, pauses for human input when attribute labels
are too long, and keeps an append-only history of every run outcome.
"""

__version__ = "0.1.0"
__app_name__ = "catalogharvest"
