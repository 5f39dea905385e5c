"""
Lua scripts for atomic cart operations.

Every script that reads and then writes cart state runs inside Redis, so two
requests carrying the same cart token cannot interleave their updates.
Scripts reply with a table whose first element is ``OK`` or an error code.
"""
from typing import Any, Dict, List, Optional

# Add a line item, or increment the quantity of the item with the same
# (product, variant) identity.
ADD_OR_INCREMENT_ITEM_SCRIPT = """
local cart_key = KEYS[1]
local items_key = KEYS[2]
local variants_key = KEYS[3]
local token = ARGV[1]
local product_id = ARGV[2]
local size = ARGV[3]
local qty = tonumber(ARGV[4])
local new_item_id = ARGV[5]
local created_at = ARGV[6]
local score = tonumber(ARGV[7])
local max_items = tonumber(ARGV[8])
local max_quantity = tonumber(ARGV[9])
local ttl = tonumber(ARGV[10])

local status = redis.call('HGET', cart_key, 'status')
if not status then
    return {'CART_NOT_FOUND'}
end
if status ~= 'open' then
    return {'CART_NOT_ACTIVE'}
end

local variant_field = product_id .. '|' .. size
local item_id = redis.call('HGET', variants_key, variant_field)

if item_id then
    local item_key = 'cart_item:' .. item_id
    local new_qty = tonumber(redis.call('HGET', item_key, 'qty')) + qty
    if new_qty > max_quantity then
        return {'MAX_QUANTITY_EXCEEDED', max_quantity}
    end
    redis.call('HSET', item_key, 'qty', new_qty)
    redis.call('EXPIRE', item_key, ttl)
    redis.call('EXPIRE', cart_key, ttl)
    return {'OK', item_id, new_qty, 0}
end

if qty > max_quantity then
    return {'MAX_QUANTITY_EXCEEDED', max_quantity}
end
if redis.call('ZCARD', items_key) >= max_items then
    return {'MAX_ITEMS_EXCEEDED', max_items}
end

local item_key = 'cart_item:' .. new_item_id
redis.call('HSET', item_key,
    'id', new_item_id,
    'cart_token', token,
    'product_id', product_id,
    'size', size,
    'qty', qty,
    'created_at', created_at)
redis.call('ZADD', items_key, score, new_item_id)
redis.call('HSET', variants_key, variant_field, new_item_id)

redis.call('EXPIRE', item_key, ttl)
redis.call('EXPIRE', items_key, ttl)
redis.call('EXPIRE', variants_key, ttl)
redis.call('EXPIRE', cart_key, ttl)
return {'OK', new_item_id, qty, 1}
"""

# Set the quantity of an item that belongs to the cart
SET_ITEM_QTY_SCRIPT = """
local cart_key = KEYS[1]
local items_key = KEYS[2]
local item_id = ARGV[1]
local qty = tonumber(ARGV[2])
local max_quantity = tonumber(ARGV[3])
local ttl = tonumber(ARGV[4])

local status = redis.call('HGET', cart_key, 'status')
if not status then
    return {'CART_NOT_FOUND'}
end
if status ~= 'open' then
    return {'CART_NOT_ACTIVE'}
end
if not redis.call('ZSCORE', items_key, item_id) then
    return {'ITEM_NOT_FOUND'}
end
if qty > max_quantity then
    return {'MAX_QUANTITY_EXCEEDED', max_quantity}
end

local item_key = 'cart_item:' .. item_id
redis.call('HSET', item_key, 'qty', qty)
redis.call('EXPIRE', item_key, ttl)
redis.call('EXPIRE', cart_key, ttl)
return {'OK', item_id, qty}
"""

# Remove an item that belongs to the cart
REMOVE_ITEM_SCRIPT = """
local cart_key = KEYS[1]
local items_key = KEYS[2]
local variants_key = KEYS[3]
local item_id = ARGV[1]

local status = redis.call('HGET', cart_key, 'status')
if not status then
    return {'CART_NOT_FOUND'}
end
if status ~= 'open' then
    return {'CART_NOT_ACTIVE'}
end
if redis.call('ZREM', items_key, item_id) == 0 then
    return {'ITEM_NOT_FOUND'}
end

local item_key = 'cart_item:' .. item_id
local product_id = redis.call('HGET', item_key, 'product_id')
local size = redis.call('HGET', item_key, 'size')
if product_id then
    redis.call('HDEL', variants_key, product_id .. '|' .. (size or ''))
end
redis.call('DEL', item_key)
return {'OK', item_id}
"""

# Patch cart fields. ARGV[1] is the status the cart must be in ('' for any),
# the remaining arguments are field/value pairs. Empty values delete the field.
UPDATE_CART_FIELDS_SCRIPT = """
local cart_key = KEYS[1]
local required_status = ARGV[1]

local status = redis.call('HGET', cart_key, 'status')
if not status then
    return {'CART_NOT_FOUND'}
end
if required_status ~= '' and status ~= required_status then
    return {'CART_NOT_ACTIVE'}
end

for i = 2, #ARGV, 2 do
    if ARGV[i + 1] == '' then
        redis.call('HDEL', cart_key, ARGV[i])
    else
        redis.call('HSET', cart_key, ARGV[i], ARGV[i + 1])
    end
end
return {'OK'}
"""

# Conditional status transition (open -> charging, charging -> open).
TRANSITION_STATUS_SCRIPT = """
local cart_key = KEYS[1]
local from_status = ARGV[1]
local to_status = ARGV[2]

local status = redis.call('HGET', cart_key, 'status')
if not status then
    return {'CART_NOT_FOUND'}
end
if status ~= from_status then
    return {'CART_NOT_ACTIVE', status}
end
redis.call('HSET', cart_key, 'status', to_status)
return {'OK', to_status}
"""

# Close a charging cart: set closed_at, apply the billing patch and keep the
# cart and its items forever.
CLOSE_CART_SCRIPT = """
local cart_key = KEYS[1]
local items_key = KEYS[2]
local variants_key = KEYS[3]
local closed_at = ARGV[1]

local status = redis.call('HGET', cart_key, 'status')
if not status then
    return {'CART_NOT_FOUND'}
end
if status ~= 'charging' then
    return {'CART_NOT_ACTIVE', status}
end

redis.call('HSET', cart_key, 'status', 'closed', 'closed_at', closed_at)
for i = 2, #ARGV, 2 do
    redis.call('HSET', cart_key, ARGV[i], ARGV[i + 1])
end

local item_ids = redis.call('ZRANGE', items_key, 0, -1)
for _, item_id in ipairs(item_ids) do
    redis.call('PERSIST', 'cart_item:' .. item_id)
end
redis.call('PERSIST', cart_key)
redis.call('PERSIST', items_key)
redis.call('PERSIST', variants_key)
return {'OK', closed_at}
"""


class AtomicScripts:
    """Thin wrapper that runs the cart scripts through the RedisClient retry logic"""

    def __init__(self, redis_wrapper):
        self.redis_wrapper = redis_wrapper

    def add_or_increment_item(
        self,
        keys: List[str],
        token: str,
        product_id: str,
        size: Optional[str],
        qty: int,
        new_item_id: str,
        created_at: str,
        score: float,
        max_items: int,
        max_quantity: int,
        ttl: int
    ) -> List[Any]:
        return self.redis_wrapper.eval(
            ADD_OR_INCREMENT_ITEM_SCRIPT,
            3,
            *keys,
            token,
            product_id,
            size or "",
            str(qty),
            new_item_id,
            created_at,
            str(score),
            str(max_items),
            str(max_quantity),
            str(ttl)
        )

    def set_item_qty(self, keys: List[str], item_id: str, qty: int, max_quantity: int, ttl: int) -> List[Any]:
        return self.redis_wrapper.eval(
            SET_ITEM_QTY_SCRIPT, 2, *keys, item_id, str(qty), str(max_quantity), str(ttl)
        )

    def remove_item(self, keys: List[str], item_id: str) -> List[Any]:
        return self.redis_wrapper.eval(REMOVE_ITEM_SCRIPT, 3, *keys, item_id)

    def update_cart_fields(self, cart_key: str, fields: Dict[str, str], required_status: str = "") -> List[Any]:
        return self.redis_wrapper.eval(
            UPDATE_CART_FIELDS_SCRIPT, 1, cart_key, required_status, *_flatten(fields)
        )

    def transition_status(self, cart_key: str, from_status: str, to_status: str) -> List[Any]:
        return self.redis_wrapper.eval(TRANSITION_STATUS_SCRIPT, 1, cart_key, from_status, to_status)

    def close_cart(self, keys: List[str], closed_at: str, fields: Dict[str, str]) -> List[Any]:
        return self.redis_wrapper.eval(CLOSE_CART_SCRIPT, 3, *keys, closed_at, *_flatten(fields))


def _flatten(fields: Dict[str, str]) -> List[str]:
    flat: List[str] = []
    for name, value in fields.items():
        flat.extend((name, value))
    return flat
