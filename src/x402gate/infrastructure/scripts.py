"""Central registry for the Redis Lua scripts used by the sliding-window rate limiter.

Each script runs atomically on the Redis server, so concurrent requests for the
same identifier cannot interleave between the prune, count and add steps.

Return Code Conventions:
    Scripts return a two-element array ``{code, value}``:

    - 0: Nothing to do - ``admit_attempt`` found the window full (the second
         element is the current count) or ``release_attempt`` found it empty
         (the second element is an empty string).

    - 1: Success - the second element carries the result (the attempt count
         for ``admit_attempt`` / ``record_attempt`` / ``count_attempts``, the
         removed member for ``release_attempt``).

Arguments:
    ``KEYS[1]`` is always the window key. ``ARGV[1]`` is the current time in
    seconds (float) and ``ARGV[2]`` the window length; entries whose score is
    ``< now - window`` are pruned before anything else happens, so the window
    is ``[now - window, now]``.
"""

RATE_LIMIT_SCRIPTS = {
    "admit_attempt": """
        local key = KEYS[1]
        local now = tonumber(ARGV[1])
        local window = tonumber(ARGV[2])
        local member = ARGV[3]
        local ttl = tonumber(ARGV[4])
        local max_attempts = tonumber(ARGV[5])

        redis.call('ZREMRANGEBYSCORE', key, '-inf', '(' .. (now - window))
        local count = redis.call('ZCARD', key)
        if count >= max_attempts then
            return {0, count}
        end
        redis.call('ZADD', key, now, member)
        redis.call('EXPIRE', key, ttl)
        return {1, count + 1}
        """,
    "record_attempt": """
        local key = KEYS[1]
        local now = tonumber(ARGV[1])
        local window = tonumber(ARGV[2])
        local member = ARGV[3]
        local ttl = tonumber(ARGV[4])

        redis.call('ZREMRANGEBYSCORE', key, '-inf', '(' .. (now - window))
        redis.call('ZADD', key, now, member)
        redis.call('EXPIRE', key, ttl)
        return {1, redis.call('ZCARD', key)}
        """,
    "count_attempts": """
        local key = KEYS[1]
        local now = tonumber(ARGV[1])
        local window = tonumber(ARGV[2])

        redis.call('ZREMRANGEBYSCORE', key, '-inf', '(' .. (now - window))
        return {1, redis.call('ZCARD', key)}
        """,
    "release_attempt": """
        local key = KEYS[1]
        local now = tonumber(ARGV[1])
        local window = tonumber(ARGV[2])

        redis.call('ZREMRANGEBYSCORE', key, '-inf', '(' .. (now - window))
        local oldest = redis.call('ZRANGE', key, 0, 0)
        if #oldest == 0 then
            return {0, ''}
        end
        redis.call('ZREM', key, oldest[1])
        return {1, oldest[1]}
        """,
}
