# Overview: Flask extension instances for database, migrations, and the ledger summary cache.

from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate

from .services.summary_cache import SummaryCache

db = SQLAlchemy()
migrate = Migrate()
summary_cache = SummaryCache()
