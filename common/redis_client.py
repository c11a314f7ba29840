#!/usr/bin/env python3
"""
Tiris Backend
Redis Client Module

This module provides the Redis client backing the rate limiter and the
health check.
"""

import redis.asyncio as redis
from redis.exceptions import RedisError as RedisLibraryError

from common.logger import get_logger
from common.exceptions import RedisError, RedisConnectionError


class RedisClient:
    """Client for Redis operations."""

    def __init__(self, host="localhost", port=6379, db=0, password=None,
                 ssl=False, timeout=10, max_connections=50, client=None):
        """
        Initialize Redis client.

        Args:
            host: Redis host
            port: Redis port
            db: Redis database
            password: Redis password
            ssl: Whether to use SSL
            timeout: Connection timeout in seconds
            max_connections: Maximum number of connections
            client: Pre-built ``redis.asyncio.Redis`` compatible client
        """
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.ssl = ssl
        self.timeout = timeout
        self.max_connections = max_connections
        self.client = client
        self.logger = get_logger("RedisClient")

    @classmethod
    def from_config(cls, config) -> 'RedisClient':
        """Build a client from the ``redis`` section of a Config."""
        section = config.get("redis", {}) or {}
        return cls(
            host=section.get("host", "localhost"),
            port=section.get("port", 6379),
            db=section.get("db", 0),
            password=section.get("password"),
            ssl=section.get("ssl", False),
            timeout=section.get("timeout", 10),
            max_connections=section.get("max_connections", 50),
        )

    async def initialize(self):
        """
        Initialize the Redis connection pool.

        Raises:
            RedisConnectionError: If connection fails
        """
        try:
            if self.client is None:
                self.client = redis.Redis(
                    host=self.host,
                    port=self.port,
                    db=self.db,
                    password=self.password,
                    ssl=self.ssl,
                    socket_timeout=self.timeout,
                    socket_connect_timeout=self.timeout,
                    socket_keepalive=True,
                    retry_on_timeout=True,
                    max_connections=self.max_connections,
                    decode_responses=True,
                )

            await self.client.ping()

            self.logger.info(f"Connected to Redis at {self.host}:{self.port} (db: {self.db})")

        except RedisLibraryError as e:
            self.logger.error(f"Failed to connect to Redis: {str(e)}")
            raise RedisConnectionError(f"Failed to connect to Redis: {str(e)}")

    async def close(self):
        """Close the Redis connection."""
        if self.client:
            await self.client.aclose()
            self.logger.info("Redis connection closed")

    async def ping(self):
        """
        Ping the Redis server.

        Raises:
            RedisError: If ping fails
        """
        try:
            return await self.client.ping()
        except RedisLibraryError as e:
            self.logger.error(f"Redis ping failed: {str(e)}")
            raise RedisError(f"Redis ping failed: {str(e)}")

    async def delete(self, *keys):
        """
        Delete keys from Redis.

        Returns:
            Number of keys deleted

        Raises:
            RedisError: If delete fails
        """
        try:
            return await self.client.delete(*keys)
        except RedisLibraryError as e:
            self.logger.error(f"Redis delete failed for keys {keys}: {str(e)}")
            raise RedisError(f"Redis delete failed: {str(e)}")

    def pipeline(self, transaction: bool = True):
        """Start a command pipeline on the underlying client."""
        return self.client.pipeline(transaction=transaction)
