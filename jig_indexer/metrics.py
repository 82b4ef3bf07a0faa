"""Prometheus metrics for the indexer."""

from prometheus_client import Counter, Gauge, Histogram

remote_requests = Counter(
    "jig_indexer_remote_requests_total",
    "Total number of chain API requests",
    ["endpoint"]
)

rate_limit_hits = Counter(
    "jig_indexer_rate_limit_hits_total",
    "Total number of rate-limited chain API responses"
)

nfts_traced = Counter(
    "jig_indexer_nfts_traced_total",
    "Total number of NFT ownership traces by outcome",
    ["status"]
)

transfers_recorded = Counter(
    "jig_indexer_transfers_recorded_total",
    "Total number of transfers written to the ledger"
)

discovery_processed = Counter(
    "jig_indexer_discovery_transactions_total",
    "Total number of discovery queue pops by outcome",
    ["outcome"]
)

owned_nfts = Gauge(
    "jig_indexer_owned_nfts",
    "Number of NFTs with a resolved owner"
)

queue_length = Gauge(
    "jig_indexer_queue_length",
    "Number of transactions waiting in the discovery queue"
)

trace_hops = Histogram(
    "jig_indexer_trace_hops",
    "Spends followed per NFT trace",
    buckets=[0, 1, 2, 3, 5, 10, 20, 50]
)

spend_map_build_duration = Histogram(
    "jig_indexer_spend_map_build_seconds",
    "Time taken to build one address spend map",
    buckets=[1, 10, 60, 300, 900, 3600]
)
