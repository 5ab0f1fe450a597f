"""Fetch function builders shared by the cache tests."""

from __future__ import annotations


def raising(exc: Exception):
    async def fetch():
        raise exc

    return fetch


def returning(value: object):
    async def fetch():
        return value

    return fetch
