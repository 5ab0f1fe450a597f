from flask import Blueprint, current_app, jsonify, request

from services.market import QuoteService
from utils.cache import CacheEntry, FreshnessCache
from utils.cache_keys import format_timestamp, freshness_indicator

bp = Blueprint('api', __name__, url_prefix='/api')

MAX_BATCH_SYMBOLS = 50


def _quotes() -> QuoteService:
    return current_app.extensions['quote_service']


def _cache() -> FreshnessCache:
    return current_app.extensions['freshness_cache']


def _entry_payload(entry: CacheEntry) -> dict:
    now = _cache().now()
    payload = entry.to_dict()
    payload['freshness'] = freshness_indicator(entry, now=now)
    payload['age'] = format_timestamp(entry.timestamp, now=now)
    return payload


@bp.get('/health')
def health():
    return {'status': 'ok'}


@bp.get('/quote')
async def quote():
    symbol = (request.args.get('symbol') or '').strip()
    if not symbol:
        return jsonify(error='symbol is required'), 400
    try:
        entry = await _quotes().get_quote(symbol)
    except ValueError as ve:
        return jsonify(error=str(ve)), 400
    except Exception as e:
        current_app.logger.warning("Quote for %s unavailable: %s", symbol, e)
        return jsonify(error=f'Quote unavailable: {e}'), 502
    return jsonify(_entry_payload(entry))


@bp.get('/quotes')
async def quotes():
    raw = request.args.get('symbols') or ''
    symbols = [s.strip() for s in raw.split(',') if s.strip()]
    if not symbols:
        return jsonify(error='symbols is required'), 400
    if len(symbols) > MAX_BATCH_SYMBOLS:
        return jsonify(error=f'at most {MAX_BATCH_SYMBOLS} symbols per request'), 400

    results = await _quotes().get_quotes(symbols)
    items = []
    for r in results:
        if r.ok:
            items.append({'symbol': r.symbol, **_entry_payload(r.entry)})
        else:
            items.append({'symbol': r.symbol, 'error': r.error})
    return jsonify(items=items)


@bp.get('/cache/stats')
def cache_stats():
    return jsonify(_cache().stats().to_dict())


@bp.post('/cache/cleanup')
def cache_cleanup():
    return jsonify(removed=_cache().cleanup())
