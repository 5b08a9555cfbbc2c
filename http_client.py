import aiohttp


async def fetch_json(url, params=None, timeout=15):
    """GET a JSON document. Raises on transport errors and non-2xx statuses."""
    async with aiohttp.ClientSession() as session:
        async with session.get(url, params=params, timeout=aiohttp.ClientTimeout(total=timeout)) as response:
            response.raise_for_status()
            return await response.json(content_type=None)
