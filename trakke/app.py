"""
Quart application exposing the published POI state over HTTP.

One AggregationPipeline (and so one cache and in-flight flag) is kept per
map view id, up to ``max_views`` views. Source adapters share one aiohttp
session opened at startup.
"""

import logging
from collections import OrderedDict
from typing import Callable, Optional

import aiohttp
from quart import Quart
from quart_cors import cors
from redis import asyncio as aioredis

from trakke import metrics
from trakke.admin_store import InMemoryAdminStore
from trakke.config import get_config, setup_logging
from trakke.pipeline import AggregationPipeline
from trakke.providers.overpass_provider import OverpassAdapter
from trakke.providers.riksantikvaren_provider import RiksantikvarenAdapter
from trakke.providers.wfs_provider import WFSAdapter

logger = logging.getLogger(__name__)

PipelineFactory = Callable[["TrakkeState"], AggregationPipeline]


class TrakkeState:
    """Per-app clients and the view -> pipeline registry.

    View ids come from clients, so the registry is an LRU: once it holds
    ``max_views`` pipelines the least recently used one is dropped (and
    its pass cancelled if one is running).
    """

    def __init__(self, pipeline_factory: Optional[PipelineFactory] = None, max_views: Optional[int] = None):
        self.session: Optional[aiohttp.ClientSession] = None
        self.redis_client: Optional[aioredis.Redis] = None
        self.admin_store = InMemoryAdminStore()
        self._factory = pipeline_factory or default_pipeline_factory
        self.max_views = max_views or get_config().pipeline_config.max_views
        self._pipelines: "OrderedDict[str, AggregationPipeline]" = OrderedDict()

    def pipeline(self, view: str) -> AggregationPipeline:
        if view in self._pipelines:
            self._pipelines.move_to_end(view)
            return self._pipelines[view]

        logger.info(f"[APP] creating pipeline for view '{view}'")
        pipeline = self._factory(self)
        self._pipelines[view] = pipeline
        while len(self._pipelines) > self.max_views:
            old_view, old = self._pipelines.popitem(last=False)
            if old.in_flight:
                old.cancel()
            logger.info(f"[APP] dropped least recently used view '{old_view}'")
        return pipeline

    def has_view(self, view: str) -> bool:
        return view in self._pipelines

    def __len__(self) -> int:
        return len(self._pipelines)


def default_pipeline_factory(state: TrakkeState) -> AggregationPipeline:
    return AggregationPipeline(
        adapters=[
            OverpassAdapter(session=state.session),
            WFSAdapter(session=state.session),
            RiksantikvarenAdapter(session=state.session),
        ],
        admin_store=state.admin_store,
    )


def create_app(pipeline_factory: Optional[PipelineFactory] = None, max_views: Optional[int] = None) -> Quart:
    config = get_config()
    app = Quart(__name__)
    cors(app, allow_origin=config.cors_origin, allow_methods=["GET", "POST", "OPTIONS"])
    state = TrakkeState(pipeline_factory, max_views=max_views)
    app.extensions["trakke"] = state

    from trakke.routes import bp
    app.register_blueprint(bp)

    @app.before_serving
    async def startup():
        app.logger.debug(f"[APP] config: {config.to_dict()}")
        source_config = config.source_config
        state.session = aiohttp.ClientSession(headers={"User-Agent": source_config.overpass_user_agent})
        if config.redis_url:
            try:
                state.redis_client = aioredis.from_url(config.redis_url)
                await state.redis_client.ping()
                app.logger.info("Redis connected; metrics stored in Redis")
            except (aioredis.RedisError, OSError):
                state.redis_client = None
                app.logger.warning("Redis not available; keeping metrics in memory")
        metrics.configure_redis(client=state.redis_client)

    @app.after_serving
    async def shutdown():
        if state.session:
            await state.session.close()
        if state.redis_client:
            await state.redis_client.close()
        metrics.configure_redis(None)

    return app


def main():
    setup_logging()
    config = get_config()
    create_app().run(debug=config.debug)


if __name__ == "__main__":
    main()
