"""
Resumable ingestion of paginated upstream events.

Modules:
    runner: IngestionRunner, the fetch → insert+checkpoint → pace loop
    checkpoint: CheckpointStore for the singleton ingestion_state row
    timestamps: Best-effort event timestamp extraction (epoch ms)
    progress: Throughput and ETA reporting
    export: Bulk dump of stored event ids to a text file

Subpackages:
    extractors: Retrying HTTP transport, envelope normalization, page fetcher
    loaders: Chunked insert-or-skip event loader

Architecture:
    Data flows one way:

    1. Fetch - one page per iteration through EventsAPIClient, which retries
       429/5xx via RetryingHTTPClient and normalizes the envelope
    2. Map - keep events with a string id, compute the high-water timestamp
    3. Load - insert the batch and advance the checkpoint in one transaction

    A crash before commit repeats the page on restart; duplicate ids are
    skipped by ON CONFLICT (id) DO NOTHING.

Example:
    async with httpx.AsyncClient(timeout=30.0) as client:
        fetcher = EventsAPIClient(
            http=RetryingHTTPClient(client),
            base_url="https://api.example.com/api/v1",
            api_key="..."
        )
        runner = IngestionRunner(session, fetcher)
        result = await runner.run()

    print(f"Ingested {result['ingested_count']} events")

Error Handling:
    All components raise exceptions from core.exceptions; the runner
    recovers locally from cursor expiry, bad JSON and upstream 502/503/504
    and treats everything else as fatal.
"""
