"""HTTP benchmark for the blog content endpoints, reporting cache hit ratios."""
import asyncio
import argparse
import time
import statistics
import httpx

DEFAULT_BASE_URL = "http://localhost:8000"

ENDPOINTS = [
    ("GET /api/v1/posts", "/api/v1/posts?status=published"),
    ("GET /api/v1/posts?limit=50", "/api/v1/posts?status=published&page=1&limit=50"),
    ("GET /api/v1/posts?query=python", "/api/v1/posts?status=published&query=python"),
    ("GET /api/v1/posts?tags=redis,docker", "/api/v1/posts?status=published&tags=redis,docker"),
    ("GET /api/v1/posts/1", "/api/v1/posts/1"),
    ("GET /api/v1/posts/1/related", "/api/v1/posts/1/related"),
    ("GET /api/v1/posts/popular?timeframe=month", "/api/v1/posts/popular?timeframe=month"),
    ("GET /api/v1/categories", "/api/v1/categories"),
    ("GET /api/v1/categories/stats", "/api/v1/categories/stats"),
    ("GET /api/v1/metrics", "/api/v1/metrics"),
    ("GET /health", "/health"),
]


async def benchmark_endpoint(client: httpx.AsyncClient, base_url: str, name: str, path: str, iterations: int = 50):
    times = []
    query_counts = []
    hits = 0
    errors = 0

    # Warmup
    for _ in range(3):
        try:
            await client.get(f"{base_url}{path}")
        except httpx.HTTPError:
            pass

    for _ in range(iterations):
        try:
            start = time.perf_counter()
            resp = await client.get(f"{base_url}{path}")
            elapsed = (time.perf_counter() - start) * 1000
        except httpx.HTTPError:
            errors += 1
            continue

        if resp.status_code != 200:
            errors += 1
            continue
        times.append(elapsed)
        qc = resp.headers.get("X-Query-Count")
        if qc is not None:
            query_counts.append(int(qc))
        if resp.headers.get("X-Cache") == "HIT":
            hits += 1

    if not times:
        return {"name": name, "error": f"All {iterations} requests failed"}

    ordered = sorted(times)
    return {
        "name": name,
        "avg_ms": round(statistics.mean(times), 2),
        "p50_ms": round(ordered[len(ordered) // 2], 2),
        "p95_ms": round(ordered[int(len(ordered) * 0.95)], 2),
        "p99_ms": round(ordered[int(len(ordered) * 0.99)], 2),
        "queries": round(statistics.mean(query_counts), 1) if query_counts else "N/A",
        "hit_pct": round(hits / len(times) * 100),
        "errors": errors,
        "iterations": len(times),
    }


async def run_benchmark(base_url: str, iterations: int = 50):
    print("=" * 96)
    print(f"Blog content API benchmark: {iterations} iterations per endpoint")
    print(f"Target: {base_url}")
    print("=" * 96)

    async with httpx.AsyncClient() as client:
        try:
            resp = await client.get(f"{base_url}/health")
            if resp.status_code != 200:
                print(f"ERROR: Health check failed ({resp.status_code})")
                return
            print(f"Health: {resp.json()}")
        except httpx.HTTPError as e:
            print(f"ERROR: Cannot connect to {base_url}: {e}")
            return

        print()
        print(f"{'Endpoint':<45} {'Avg':>8} {'P50':>8} {'P95':>8} {'P99':>8} {'Queries':>8} {'Hit%':>5} {'Err':>4}")
        print("-" * 96)

        for name, path in ENDPOINTS:
            result = await benchmark_endpoint(client, base_url, name, path, iterations)
            if "error" in result:
                print(f"{result['name']:<45} {'ERROR':>8}")
            else:
                print(
                    f"{result['name']:<45} "
                    f"{result['avg_ms']:>7.1f}ms "
                    f"{result['p50_ms']:>7.1f}ms "
                    f"{result['p95_ms']:>7.1f}ms "
                    f"{result['p99_ms']:>7.1f}ms "
                    f"{str(result['queries']):>8} "
                    f"{result['hit_pct']:>5} "
                    f"{result['errors']:>4}"
                )

        print("-" * 96)
        metrics = await client.get(f"{base_url}/api/v1/metrics")
        if metrics.status_code == 200:
            print(f"Cache: {metrics.json()['cache_info']}")
        print("\nBenchmark complete.")


def main():
    parser = argparse.ArgumentParser(description="Benchmark the blog content API")
    parser.add_argument("-n", "--iterations", type=int, default=50, help="Iterations per endpoint")
    parser.add_argument("--base-url", default=DEFAULT_BASE_URL, help="API base URL")
    args = parser.parse_args()
    asyncio.run(run_benchmark(args.base_url, args.iterations))


if __name__ == "__main__":
    main()
