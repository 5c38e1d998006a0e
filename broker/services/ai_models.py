#  Generation Broker - AI Model Catalog
#
#  Read access to ai_models for pricing and URL lookup, plus a minimal
#  create path for seeding. Parameter schemas are cached per model until
#  the TTL lapses.
#
#  Depends on: cache.py, config.py, db/connection.py, models/records.py, money.py
#  Used by:    container.py, services/submission.py, routes/models.py

import json
import time

from broker.cache import Cache, model_params_key
from broker.config import CACHE_MODEL_PARAMS_TTL
from broker.db.connection import Database
from broker.exceptions import NotFoundError, ValidationError
from broker.models.enums import ModelStatus
from broker.models.records import AIModel
from broker.money import to_units


class AIModelCatalog:
    def __init__(self, db: Database, cache: Cache):
        self._db = db
        self._cache = cache

    async def get(self, model_id: int) -> AIModel:
        row = await self._db.fetchone("SELECT * FROM ai_models WHERE id = ?", (model_id,))
        if not row:
            raise NotFoundError(f"Model {model_id} not found")
        return AIModel.from_row(row)

    async def find_by_url(self, url: str) -> AIModel | None:
        if not url:
            return None
        row = await self._db.fetchone(
            "SELECT * FROM ai_models WHERE url = ? ORDER BY id LIMIT 1", (url,),
        )
        return AIModel.from_row(row) if row else None

    async def get_parameters(self, model_id: int) -> dict:
        key = model_params_key(model_id)
        cached = await self._cache.get_json(key)
        if cached is not None:
            return cached
        model = await self.get(model_id)
        await self._cache.set_json(key, model.parameters, CACHE_MODEL_PARAMS_TTL)
        return model.parameters

    async def create(
        self,
        name: str,
        url: str = "",
        price=0,
        status: ModelStatus = ModelStatus.OPEN,
        parameters: dict | None = None,
    ) -> AIModel:
        if not name:
            raise ValidationError("name is required")
        price_units = to_units(price)
        if price_units < 0:
            raise ValidationError("price must be >= 0")
        now = time.time()
        cursor = await self._db.execute_write(
            "INSERT INTO ai_models (name, url, price, status, parameters_json, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (name, url, price_units, ModelStatus(status).value,
             json.dumps(parameters or {}), now, now),
        )
        return await self.get(cursor.lastrowid)
