"""
Block server exposing one node's BlockManager over HTTP.

Endpoints:
- GET /health: liveness
- GET /blocks: ids resident on this node
- GET /blocks/{block_id}: raw payload (404 if absent)
- PUT /blocks/{block_id}: store raw body, replacing any prior value
- DELETE /blocks/{block_id}: drop a block
"""

import argparse
import logging
from typing import List

from fastapi import FastAPI, HTTPException, Request, Response
from pydantic import BaseModel, Field
import uvicorn

from communication.block_store import BlockManager


logger = logging.getLogger(__name__)


# Pydantic models for API

class HealthResponse(BaseModel):
    """Liveness report of one node."""
    status: str = Field(..., description="Service status")
    node_id: int = Field(..., description="Node identifier")
    blocks: int = Field(..., description="Number of resident blocks", ge=0)


class BlockListResponse(BaseModel):
    """Ids of blocks resident on one node."""
    node_id: int = Field(..., description="Node identifier")
    block_ids: List[int] = Field(..., description="Resident block ids, ascending")


class BlockWriteResponse(BaseModel):
    """Result of storing a block."""
    block_id: int = Field(..., description="Numeric block id")
    size: int = Field(..., description="Payload size in bytes", ge=0)


class BlockDeleteResponse(BaseModel):
    """Result of removing a block."""
    block_id: int = Field(..., description="Numeric block id")
    removed: bool = Field(..., description="Whether the block existed")


def create_block_app(manager: BlockManager) -> FastAPI:
    """
    Build the FastAPI app serving `manager`.

    Args:
        manager: BlockManager of the node being served

    Returns:
        FastAPI application
    """
    app = FastAPI(
        title="Legion Block Server",
        description="Named byte-block store for AllReduce shard exchange",
        version="0.1.0"
    )

    @app.get("/health", response_model=HealthResponse)
    async def health():
        return HealthResponse(status="healthy", node_id=manager.node_id, blocks=len(manager))

    @app.get("/blocks", response_model=BlockListResponse)
    async def list_blocks():
        return BlockListResponse(node_id=manager.node_id, block_ids=manager.block_ids())

    @app.get("/blocks/{block_id}")
    async def get_block(block_id: int):
        payload = manager.get_bytes(block_id)
        if payload is None:
            raise HTTPException(status_code=404, detail=f"Block {block_id} not found")
        return Response(content=payload, media_type="application/octet-stream")

    @app.put("/blocks/{block_id}", response_model=BlockWriteResponse)
    async def put_block(block_id: int, request: Request):
        payload = await request.body()
        manager.put_bytes(block_id, payload)
        logger.debug(f"Node {manager.node_id} received block {block_id} ({len(payload)} bytes)")
        return BlockWriteResponse(block_id=block_id, size=len(payload))

    @app.delete("/blocks/{block_id}", response_model=BlockDeleteResponse)
    async def delete_block(block_id: int):
        if not manager.remove(block_id):
            raise HTTPException(status_code=404, detail=f"Block {block_id} not found")
        return BlockDeleteResponse(block_id=block_id, removed=True)

    return app


def serve(manager: BlockManager, host: str = "0.0.0.0", port: int = 8100, log_level: str = "info"):
    """Run the block server until interrupted"""
    logger.info(f"Serving blocks of node {manager.node_id} on {host}:{port}")
    uvicorn.run(create_block_app(manager), host=host, port=port, log_level=log_level)


def main():
    parser = argparse.ArgumentParser(description="Legion Block Server")
    parser.add_argument('--node-id', type=int, required=True, help='Node identifier')
    parser.add_argument('--host', type=str, default='0.0.0.0', help='Bind address')
    parser.add_argument('--port', type=int, default=8100, help='Bind port')
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    serve(BlockManager(args.node_id), host=args.host, port=args.port)


if __name__ == "__main__":
    main()
