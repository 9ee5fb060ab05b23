"""
Lua sources of the server-side algorithm steps.

Each script is the Redis-side twin of one algorithm in
`quotaguard.domain.rate_limiting.algorithms` and runs as a single EVALSHA, so
the read, the decision and the write of a key cannot interleave with another
client. The arithmetic follows the Python implementation operation by
operation; both sides run IEEE doubles, so they agree on every decision.

Calling convention:

    KEYS[1] = store key
    ARGV    = now, cost, ttl_seconds, <algorithm parameters>

Reply: {allowed, remaining, limit, reset_at, retry_after}, all as strings,
retry_after empty when the request was admitted.

State is the same compact JSON document the Python codec writes, read with
Lua patterns.
"""

from typing import Dict

from quotaguard.domain.rate_limiting.value_objects import RateLimitAlgorithm

_PRELUDE = """
local EPSILON = 1e-9
local key = KEYS[1]
local now = tonumber(ARGV[1])
local cost = tonumber(ARGV[2])
local ttl = ARGV[3]
local raw = redis.call('GET', key)

local function field(name)
    if not raw then
        return nil
    end
    return tonumber(string.match(raw, '"' .. name .. '":%s*(-?[%d%.eE+-]+)'))
end

local function num(value)
    return string.format('%.17g', value)
end

local function clamp(value, limit)
    return math.max(0, math.min(limit, math.floor(value + EPSILON)))
end

local function reply(allowed, remaining, limit, reset_at, retry_after)
    local retry = ''
    if retry_after then
        retry = num(retry_after)
    end
    return {allowed and '1' or '0', num(remaining), num(limit), num(reset_at), retry}
end

local function save(payload)
    redis.call('SET', key, payload, 'EX', ttl)
end
"""

FIXED_WINDOW = _PRELUDE + """
local limit = tonumber(ARGV[4])
local window = tonumber(ARGV[5])

local window_start = math.floor(now / window) * window
local count = 0
local stored_start, stored_count = field('window_start'), field('count')
if stored_start and stored_count and stored_start >= window_start then
    window_start, count = stored_start, stored_count
end
local reset_at = window_start + window

if cost == 0 then
    return reply(true, clamp(limit - count, limit), limit, reset_at)
end

if count + cost <= limit then
    count = count + cost
    save('{"window_start":' .. num(window_start) .. ',"count":' .. num(count) .. '}')
    return reply(true, clamp(limit - count, limit), limit, reset_at)
end

return reply(false, clamp(limit - count, limit), limit, reset_at, reset_at - now)
"""

SLIDING_WINDOW_LOG = _PRELUDE + """
local limit = tonumber(ARGV[4])
local window = tonumber(ARGV[5])

local cutoff = now - window
local entries, used = {}, 0
if raw then
    for ts, weight in string.gmatch(raw, '%[%s*(-?[%d%.eE+-]+)%s*,%s*(-?[%d%.eE+-]+)%s*%]') do
        ts, weight = tonumber(ts), tonumber(weight)
        if ts > cutoff then
            entries[#entries + 1] = {ts, weight}
            used = used + weight
        end
    end
end

local function reset_at()
    if #entries == 0 then
        return now + window
    end
    return entries[1][1] + window
end

if cost == 0 then
    return reply(true, clamp(limit - used, limit), limit, reset_at())
end

if used + cost <= limit then
    entries[#entries + 1] = {now, cost}
    local parts = {}
    for i, entry in ipairs(entries) do
        parts[i] = '[' .. num(entry[1]) .. ',' .. num(entry[2]) .. ']'
    end
    save('{"entries":[' .. table.concat(parts, ',') .. ']}')
    return reply(true, clamp(limit - used - cost, limit), limit, reset_at())
end

local retry_after = window
if cost <= limit then
    local needed, freed = used + cost - limit, 0
    for _, entry in ipairs(entries) do
        freed = freed + entry[2]
        if freed >= needed then
            retry_after = math.max(0, entry[1] + window - now)
            break
        end
    end
end
return reply(false, clamp(limit - used, limit), limit, reset_at(), retry_after)
"""

SLIDING_WINDOW_COUNTER = _PRELUDE + """
local limit = tonumber(ARGV[4])
local window = tonumber(ARGV[5])

local aligned = math.floor(now / window) * window
local prev, start, curr = field('prev_window_count'), field('curr_window_start'), field('curr_window_count')
if not (prev and start and curr) then
    prev, start, curr = 0, aligned, 0
else
    local windows_elapsed = math.floor((aligned - start) / window + 0.5)
    if windows_elapsed == 1 then
        prev, start, curr = curr, aligned, 0
    elseif windows_elapsed > 1 then
        prev, start, curr = 0, aligned, 0
    end
end

local elapsed = math.min(window, math.max(0, now - start))
local weight = (window - elapsed) / window
local effective = prev * weight + curr
local reset_at = start + window
if curr ~= 0 then
    reset_at = start + 2 * window
end

if cost == 0 then
    return reply(true, clamp(limit - effective, limit), limit, reset_at)
end

if effective + cost <= limit + EPSILON then
    save('{"prev_window_count":' .. num(prev) .. ',"curr_window_start":' .. num(start)
        .. ',"curr_window_count":' .. num(curr + cost) .. '}')
    return reply(true, clamp(limit - effective - cost, limit), limit, start + 2 * window)
end

local retry_after
local headroom = limit - curr - cost
if cost > limit then
    retry_after = math.max(0, start + 2 * window - now)
elseif headroom >= 0 and prev > 0 then
    retry_after = math.max(0, start + window * (1 - headroom / prev) - now)
elseif curr == 0 then
    retry_after = math.max(0, start + window - now)
else
    local target_weight = math.min(1, (limit - cost) / curr)
    retry_after = math.max(0, start + window + window * (1 - target_weight) - now)
end
return reply(false, clamp(limit - effective, limit), limit, reset_at, retry_after)
"""

TOKEN_BUCKET = _PRELUDE + """
local capacity = tonumber(ARGV[4])
local rate = tonumber(ARGV[5])

local tokens, last = field('tokens'), field('last_refill_at')
if not (tokens and last) then
    tokens, last = capacity, now
end
local elapsed = math.max(0, now - last)
tokens = math.min(capacity, tokens + elapsed * rate)
local refill_at = math.max(now, last)

local function decision(allowed, retry_after)
    return reply(allowed, clamp(tokens, capacity), capacity, now + (capacity - tokens) / rate, retry_after)
end

if cost == 0 then
    return decision(true)
end

if tokens + EPSILON >= cost then
    tokens = math.max(0, tokens - cost)
    save('{"tokens":' .. num(tokens) .. ',"last_refill_at":' .. num(refill_at) .. '}')
    return decision(true)
end

if cost > capacity then
    return decision(false, (capacity - tokens) / rate)
end
return decision(false, (cost - tokens) / rate)
"""

LEAKY_BUCKET = _PRELUDE + """
local capacity = tonumber(ARGV[4])
local rate = tonumber(ARGV[5])

local level, last = field('queue_level'), field('last_leak_at')
if not (level and last) then
    level, last = 0, now
end
local elapsed = math.max(0, now - last)
level = math.max(0, level - elapsed * rate)
local leak_at = math.max(now, last)

local function decision(allowed, retry_after)
    return reply(allowed, clamp(capacity - level, capacity), capacity, now + level / rate, retry_after)
end

if cost == 0 then
    return decision(true)
end

if level + cost <= capacity + EPSILON then
    level = math.min(capacity, level + cost)
    save('{"queue_level":' .. num(level) .. ',"last_leak_at":' .. num(leak_at) .. '}')
    return decision(true)
end

if cost > capacity then
    return decision(false, level / rate)
end
return decision(false, (level + cost - capacity) / rate)
"""

SCRIPTS: Dict[RateLimitAlgorithm, str] = {
    RateLimitAlgorithm.FIXED_WINDOW: FIXED_WINDOW,
    RateLimitAlgorithm.SLIDING_WINDOW_LOG: SLIDING_WINDOW_LOG,
    RateLimitAlgorithm.SLIDING_WINDOW_COUNTER: SLIDING_WINDOW_COUNTER,
    RateLimitAlgorithm.TOKEN_BUCKET: TOKEN_BUCKET,
    RateLimitAlgorithm.LEAKY_BUCKET: LEAKY_BUCKET,
}
