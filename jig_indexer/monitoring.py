"""Query API, health check and metrics endpoints."""

import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, Set

from aiohttp import web
from prometheus_client import REGISTRY, generate_latest
import structlog

from jig_indexer.config import settings

logger = structlog.get_logger(__name__)

MAX_PAGE_SIZE = 200


class MonitoringServer:
    """HTTP server exposing the ledger read-only, plus indexing triggers.

    ``service`` provides ``ledger``, ``enqueue(txids)`` and the coroutine
    ``run_discovery()``; indexing runs are serialised by the service.
    """

    def __init__(self, service, host: str = None, port: int = None):
        self.service = service
        self.host = host or settings.api_host
        self.port = port or settings.api_port
        self.runner = None
        self._tasks: Set[asyncio.Task] = set()
        self.app = web.Application()
        self._setup_routes()

    @property
    def ledger(self):
        return self.service.ledger

    def _setup_routes(self):
        """Setup HTTP routes."""
        self.app.router.add_get("/", self.index)
        self.app.router.add_get("/health", self.health_check)
        self.app.router.add_get("/status", self.status)
        if settings.enable_metrics:
            self.app.router.add_get("/metrics", self.metrics)

        self.app.router.add_get("/collection", self.get_collection)
        self.app.router.add_get("/nfts", self.get_nfts)
        self.app.router.add_get("/nft/{nft_id}", self.get_nft)
        self.app.router.add_get("/owner/{address}", self.get_owner)
        self.app.router.add_get("/history/{nft_id}", self.get_history)
        self.app.router.add_get("/search", self.search)
        self.app.router.add_post("/index", self.post_index)
        self.app.router.add_post("/reindex", self.post_reindex)

    async def index(self, request):
        """Describe the API."""
        return web.json_response({
            "name": f"{self.ledger.collection.name} Explorer",
            "description": f"API for {self.ledger.collection.name} NFTs ({self.ledger.collection.protocol})",
            "endpoints": {
                "GET /collection": "Collection info and stats",
                "GET /nfts?page=1&limit=50": "List indexed NFTs (paginated)",
                "GET /nft/{id}": "NFT details",
                "GET /owner/{address}": "NFTs held by an address",
                "GET /history/{id}": "Transfer history of an NFT",
                "GET /search?q=name": "Search NFTs by name or description",
                "POST /index": "Queue txids for discovery { txids: [...] }",
                "POST /reindex": "Run discovery over the queue",
                "GET /health": "Health check",
                "GET /status": "Indexer status",
                "GET /metrics": "Prometheus metrics",
            },
        })

    async def health_check(self, request):
        """Basic health check endpoint."""
        return web.json_response({
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "nfts": len(self.ledger.nfts),
        })

    async def status(self, request):
        """Detailed status endpoint."""
        return web.json_response({
            **self.ledger.summary(),
            "unique_owners": self.ledger.unique_owners(),
            "indexing": self.service.lock.locked(),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })

    async def metrics(self, request):
        """Prometheus metrics endpoint."""
        try:
            self.ledger.refresh_gauges()
            metrics_data = generate_latest(REGISTRY)
            return web.Response(
                body=metrics_data,
                content_type="text/plain",
                charset="utf-8"
            )
        except Exception as e:
            logger.error("Failed to generate metrics", error=str(e))
            return web.Response(
                text=f"# Error generating metrics: {str(e)}\n",
                content_type="text/plain",
                status=500
            )

    async def get_collection(self, request):
        return web.json_response(self.ledger.summary())

    async def get_nfts(self, request):
        """List NFTs with pagination."""
        try:
            page = max(int(request.query.get("page", 1)), 1)
            limit = min(max(int(request.query.get("limit", 50)), 1), MAX_PAGE_SIZE)
        except ValueError:
            return web.json_response({"error": "page and limit must be integers"}, status=400)

        total = len(self.ledger.nfts)
        return web.json_response({
            "nfts": [nft.summary() for nft in self.ledger.page(page, limit)],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": (total + limit - 1) // limit
            }
        })

    async def get_nft(self, request):
        nft = self.ledger.get(request.match_info["nft_id"])
        if nft is None:
            return web.json_response({"error": "NFT not found"}, status=404)
        return web.json_response(nft.to_dict())

    async def get_owner(self, request):
        """NFTs held by an address."""
        address = request.match_info["address"]
        held = self.ledger.held_by(address)
        return web.json_response({
            "address": address,
            "count": len(held),
            "nfts": [nft.summary() for nft in held],
        })

    async def get_history(self, request):
        nft_id = request.match_info["nft_id"]
        nft = self.ledger.get(nft_id)
        if nft is None:
            return web.json_response({"error": "NFT not found"}, status=404)
        return web.json_response({
            "id": nft_id,
            "name": nft.name,
            "owner": nft.owner,
            "burned": nft.burned,
            "transfers": [t.to_dict() for t in nft.transfers],
        })

    async def search(self, request):
        """Search NFTs by name or description."""
        search_term = request.query.get("q", "").strip()
        if not search_term:
            return web.json_response({"query": "", "count": 0, "results": []})
        results = self.ledger.search(search_term)
        return web.json_response({
            "query": search_term,
            "count": len(results),
            "results": [nft.summary() for nft in results],
        })

    async def post_index(self, request):
        """Queue txids and start discovery if anything new was added."""
        try:
            body = await request.json()
        except ValueError:
            return web.json_response({"error": "Body must be JSON"}, status=400)
        txids = body.get("txids") if isinstance(body, dict) else None
        if not isinstance(txids, list):
            return web.json_response({"error": "txids must be a list"}, status=400)

        added = self.service.enqueue(txids)
        if added:
            self._spawn_discovery()
        return web.json_response({
            "status": "queued",
            "added": added,
            "queue_length": len(self.ledger.queue),
        })

    async def post_reindex(self, request):
        self._spawn_discovery()
        return web.json_response({
            "status": "reindexing",
            "queue_length": len(self.ledger.queue),
        })

    def _spawn_discovery(self):
        task = asyncio.create_task(self._run_discovery())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run_discovery(self):
        try:
            await self.service.run_discovery()
        except Exception as e:
            logger.error("Discovery run failed", error=str(e))

    async def start(self):
        """Start the API server."""
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        site = web.TCPSite(self.runner, self.host, self.port)
        await site.start()

        logger.info(
            "API server started",
            port=self.port,
            endpoints=["/", "/health", "/status", "/metrics", "/collection", "/nfts",
                       "/nft/{id}", "/owner/{address}", "/history/{id}", "/search",
                       "/index", "/reindex"]
        )

    async def stop(self):
        for task in list(self._tasks):
            task.cancel()
        if self.runner:
            await self.runner.cleanup()
            self.runner = None
