# =============================================================================
# CoffeeLeaf Backend
# extensions.py - Flask Extensions Initialization
#
# Extensions shared by the API process and the queue worker. They are created
# unbound here and attached to the app in create_app, so services and models
# can import them without importing the app.
# =============================================================================

from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

# =============================================================================
# Database ORM
# Leaf image uploads, prediction records and per-request status logs.
# The worker writes through the same session as the API.
# =============================================================================
db = SQLAlchemy()

# =============================================================================
# Database Migrations
# Schema changes for the prediction tables (request_id uniqueness included)
# =============================================================================
migrate = Migrate()

# =============================================================================
# Cross-Origin Resource Sharing
# Field apps and the web dashboard upload leaf photos from other origins
# =============================================================================
cors = CORS()

# =============================================================================
# Rate Limiting
# Every upload runs eight augmented inferences; per-client limits keep one
# caller from starving the others. Defaults, strategy and storage come from
# RATELIMIT_* settings so production can count in Redis.
# =============================================================================
limiter = Limiter(key_func=get_remote_address)
