"""
Server-side Lua for session and cart writes that must not interleave.

Replies are cjson text: a Lua table with string keys would be flattened by
the Redis reply conversion, so ``AtomicScripts`` decodes the JSON instead.
Error replies carry an ``err`` code (PRODUCT_NOT_FOUND, INVALID_QUANTITY,
MAX_QUANTITY_EXCEEDED, MAX_ITEMS_EXCEEDED) that CartService maps to
exceptions.
"""
import json
from typing import Dict

# Shared by the cart scripts: stored lines are JSON CartItem dumps
_LINE_HELPERS = """
local function line_qty(raw)
    if not raw then
        return 0
    end
    return tonumber(cjson.decode(raw)['quantity']) or 0
end

local function write_line(key, variant, line, ttl)
    redis.call('HSET', key, variant, cjson.encode(line))
    redis.call('EXPIRE', key, ttl)
end
"""

# KEYS: session  ARGV: access token, refresh token, user json, ttl
COMMIT_SESSION_SCRIPT = """
local key = KEYS[1]

redis.call('DEL', key)
-- 'token' mirrors accessToken for readers of the legacy field
redis.call('HSET', key,
    'token', ARGV[1],
    'accessToken', ARGV[1],
    'refreshToken', ARGV[2],
    'user', ARGV[3])
redis.call('EXPIRE', key, tonumber(ARGV[4]))

return cjson.encode({ok = true})
"""

# KEYS: cart  ARGV: variant, line json, line limit, quantity cap, ttl
ADD_ITEM_SCRIPT = _LINE_HELPERS + """
local cart = KEYS[1]
local variant = ARGV[1]
local line = cjson.decode(ARGV[2])
local line_limit = tonumber(ARGV[3])
local cap = tonumber(ARGV[4])

local held = line_qty(redis.call('HGET', cart, variant))
local wanted = held + (tonumber(line['quantity']) or 0)

if wanted > cap then
    return cjson.encode({err = 'MAX_QUANTITY_EXCEEDED', max = cap, requested = wanted})
end

if held == 0 then
    local lines = redis.call('HLEN', cart)
    if lines >= line_limit then
        return cjson.encode({err = 'MAX_ITEMS_EXCEEDED', max = line_limit, current = lines})
    end
end

line['quantity'] = wanted
write_line(cart, variant, line, tonumber(ARGV[5]))
return cjson.encode({ok = true, quantity = wanted, is_new = (held == 0)})
"""

# KEYS: cart  ARGV: variant, quantity, quantity cap, ttl
UPDATE_QUANTITY_SCRIPT = _LINE_HELPERS + """
local cart = KEYS[1]
local variant = ARGV[1]
local wanted = tonumber(ARGV[2])
local cap = tonumber(ARGV[3])
local ttl = tonumber(ARGV[4])

local raw = redis.call('HGET', cart, variant)
if not raw then
    return cjson.encode({err = 'PRODUCT_NOT_FOUND'})
elseif wanted < 0 then
    return cjson.encode({err = 'INVALID_QUANTITY', quantity = wanted})
elseif wanted > cap then
    return cjson.encode({err = 'MAX_QUANTITY_EXCEEDED', max = cap, requested = wanted})
end

if wanted > 0 then
    local line = cjson.decode(raw)
    line['quantity'] = wanted
    write_line(cart, variant, line, ttl)
    return cjson.encode({ok = true, quantity = wanted, removed = false})
end

redis.call('HDEL', cart, variant)
if redis.call('HLEN', cart) == 0 then
    redis.call('DEL', cart)
else
    redis.call('EXPIRE', cart, ttl)
end
return cjson.encode({ok = true, quantity = 0, removed = true})
"""

# KEYS: guest cart, user cart  ARGV: policy ('sum' | 'last-write-wins'), quantity cap, ttl
MERGE_CART_SCRIPT = _LINE_HELPERS + """
local guest = KEYS[1]
local user = KEYS[2]
local policy = ARGV[1] or 'sum'
local cap = tonumber(ARGV[2])
local ttl = tonumber(ARGV[3])

local incoming = redis.call('HGETALL', guest)
local moved, clashes = 0, 0

for i = 1, #incoming, 2 do
    local variant, raw = incoming[i], incoming[i + 1]
    local line = cjson.decode(raw)
    local existing = redis.call('HGET', user, variant)

    if existing then
        clashes = clashes + 1
        if policy == 'sum' then
            line['quantity'] = math.min(line_qty(raw) + line_qty(existing), cap)
        end
    end
    write_line(user, variant, line, ttl)
    moved = moved + 1
end

-- The guest cart is consumed once its lines live on the user cart
if moved > 0 then
    redis.call('DEL', guest)
end

return cjson.encode({ok = true, merged = moved, conflicts = clashes, resolution = policy})
"""


class AtomicScripts:
    """Typed entry points for the Lua above, run through RedisClient.eval"""

    def __init__(self, redis_client):
        self.redis_client = redis_client

    async def _run(self, script: str, keys: list, *args) -> Dict:
        reply = await self.redis_client.eval(script, len(keys), *keys, *[str(a) for a in args])
        return json.loads(reply)

    async def commit_session(self, session_key: str, access_token: str, refresh_token: str,
                             user_json: str, ttl: int) -> Dict:
        return await self._run(COMMIT_SESSION_SCRIPT, [session_key], access_token, refresh_token, user_json, ttl)

    async def add_item(self, cart_key: str, variant_id: str, item_json: str, max_items: int,
                       max_quantity: int, ttl: int) -> Dict:
        return await self._run(ADD_ITEM_SCRIPT, [cart_key], variant_id, item_json, max_items, max_quantity, ttl)

    async def update_quantity(self, cart_key: str, variant_id: str, quantity: int,
                              max_quantity: int, ttl: int) -> Dict:
        return await self._run(UPDATE_QUANTITY_SCRIPT, [cart_key], variant_id, quantity, max_quantity, ttl)

    async def merge_cart(self, source_key: str, target_key: str, conflict_resolution: str,
                         max_quantity: int, ttl: int) -> Dict:
        """Move every line of ``source_key`` into ``target_key`` and delete the source"""
        return await self._run(MERGE_CART_SCRIPT, [source_key, target_key], conflict_resolution, max_quantity, ttl)
