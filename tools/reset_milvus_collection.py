from __future__ import annotations

"""CLI utility to drop and recreate the tenant chunk collection in Milvus."""

import argparse

from src.app.settings import settings


def main(argv: list[str] | None = None) -> None:
    """Reset the configured Milvus collection using app settings."""
    parser = argparse.ArgumentParser(description="Drop and recreate the Milvus chunk collection.")
    parser.add_argument(
        "--collection",
        default=settings.milvus_collection,
        help="Collection name to reset.",
    )
    args = parser.parse_args(argv)
    if settings.vectorstore_backend.lower().strip() != "milvus":
        raise SystemExit("RAG_VECTORSTORE must be set to milvus to reset the collection")

    from pymilvus import connections, utility

    connections.connect(alias="default", uri=settings.milvus_uri, token=settings.milvus_token)

    if utility.has_collection(args.collection):
        print(f"Dropping collection: {args.collection}")
        utility.drop_collection(args.collection)

    from src.app.dependencies import build_embedder, build_index, reset_pipeline_cache

    reset_pipeline_cache()
    build_index(build_embedder().dimension, args.collection)  # creates schema and indexes
    print(f"Recreated collection: {args.collection}")


if __name__ == "__main__":
    main()
