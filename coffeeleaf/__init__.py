# =============================================================================
# CoffeeLeaf Backend
# coffeeleaf/__init__.py - Package Root
#
# Coffee leaf disease prediction service: image pipeline, model inference,
# caching and queue-backed asynchronous processing behind a Flask API.
# =============================================================================

__version__ = '1.1.0'
