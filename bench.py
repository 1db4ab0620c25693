import argparse
import asyncio
import os
import random
import string
import sys
import time
from dataclasses import dataclass
from statistics import mean, median
from typing import List, Optional

import httpx


DEFAULT_URL = "http://localhost:8000/api/layout/masonry"

# Typical photo shapes: portrait, square, landscape, panorama
ASPECT_RATIOS = [2 / 3, 3 / 4, 1.0, 4 / 3, 3 / 2, 16 / 9, 2.0]


@dataclass
class RequestResult:
    ok: bool
    status_code: int
    latency_s: float
    column_count: Optional[int]
    fill_rate: Optional[float]
    error: Optional[str]


def _randname(n: int = 6) -> str:
    return "".join(random.choices(string.ascii_lowercase + string.digits, k=n))


def build_payload(images_per_request: int, canvas_width: float, canvas_height: float, gap: Optional[float], padding: Optional[float], column_count: Optional[int]) -> dict:
    payload = {
        "canvas_width": canvas_width,
        "canvas_height": canvas_height,
        "images": [
            {"id": _randname(), "aspect_ratio": random.choice(ASPECT_RATIOS)}
            for _ in range(images_per_request)
        ],
    }
    if gap is not None:
        payload["gap"] = gap
    if padding is not None:
        payload["padding"] = padding
    if column_count is not None:
        payload["column_count"] = column_count
    return payload


async def send_request(client: httpx.AsyncClient, url: str, payload: dict) -> RequestResult:
    start = time.perf_counter()
    try:
        resp = await client.post(url, json=payload, timeout=None)
        latency = time.perf_counter() - start
        column_count: Optional[int] = None
        fill_rate: Optional[float] = None
        if resp.is_success:
            data = resp.json()
            column_count = data.get("actual_column_count")
            fill_rate = data.get("fill_rate")
        return RequestResult(ok=resp.is_success, status_code=resp.status_code, latency_s=latency, column_count=column_count, fill_rate=fill_rate, error=None if resp.is_success else resp.text)
    except httpx.HTTPError as e:
        latency = time.perf_counter() - start
        return RequestResult(ok=False, status_code=0, latency_s=latency, column_count=None, fill_rate=None, error=str(e))


async def worker(name: str, client: httpx.AsyncClient, url: str, payload_args: dict, jobs_out: asyncio.Queue, results_out: asyncio.Queue):
    while True:
        try:
            _ = await jobs_out.get()
        except asyncio.CancelledError:
            break
        res = await send_request(client, url, build_payload(**payload_args))
        await results_out.put(res)
        jobs_out.task_done()


def percentile(values: List[float], p: float) -> float:
    if not values:
        return 0.0
    values_sorted = sorted(values)
    k = (len(values_sorted) - 1) * (p / 100.0)
    f = int(k)
    c = min(f + 1, len(values_sorted) - 1)
    if f == c:
        return values_sorted[int(k)]
    d0 = values_sorted[f] * (c - k)
    d1 = values_sorted[c] * (k - f)
    return d0 + d1


def print_summary(latencies: List[float], results: List[RequestResult], wall_s: float):
    total = len(results)
    ok = sum(1 for r in results if r.ok)
    errors = total - ok
    print("=== Benchmark Summary ===")
    print(f"Requests: total={total}, success={ok}, errors={errors}")
    if wall_s > 0:
        print(f"Throughput: {total / wall_s:.2f} req/s")
    if latencies:
        print("Latency (s):")
        print(f"  mean={mean(latencies):.4f}  median={median(latencies):.4f}  p90={percentile(latencies,90):.4f}  p95={percentile(latencies,95):.4f}  p99={percentile(latencies,99):.4f}")
    fill_rates = [r.fill_rate for r in results if r.fill_rate is not None]
    if fill_rates:
        print(f"Fill rate: mean={mean(fill_rates):.3f}  min={min(fill_rates):.3f}  max={max(fill_rates):.3f}")
    columns = [r.column_count for r in results if r.column_count is not None]
    if columns:
        histogram = {c: columns.count(c) for c in sorted(set(columns))}
        print(f"Columns chosen: {histogram}")


async def run_benchmark(url: str, total_requests: int, concurrency: int, payload_args: dict):
    limits = httpx.Limits(max_connections=concurrency, max_keepalive_connections=concurrency)
    timeout = httpx.Timeout(None)
    async with httpx.AsyncClient(limits=limits, timeout=timeout) as client:
        jobs_q: asyncio.Queue = asyncio.Queue()
        results_q: asyncio.Queue = asyncio.Queue()
        for _ in range(total_requests):
            jobs_q.put_nowait(1)

        workers = [asyncio.create_task(worker(f"w{i}", client, url, payload_args, jobs_q, results_q)) for i in range(concurrency)]

        results: List[RequestResult] = []
        start_wall = time.perf_counter()
        await jobs_q.join()
        wall_elapsed = time.perf_counter() - start_wall

        for w in workers:
            w.cancel()
        await asyncio.gather(*workers, return_exceptions=True)

        while not results_q.empty():
            results.append(results_q.get_nowait())

    latencies = [r.latency_s for r in results]
    print_summary(latencies, results, wall_elapsed)


def parse_args(argv: List[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Simple concurrent benchmark for the masonry layout API")
    p.add_argument("--url", default=os.environ.get("BENCH_URL", DEFAULT_URL), help="Layout endpoint URL")
    p.add_argument("--requests", type=int, default=200, help="Total number of requests")
    p.add_argument("--concurrency", type=int, default=10, help="Concurrent workers")
    p.add_argument("--images-per-request", type=int, default=12, help="Number of images per layout request")
    p.add_argument("--canvas-width", type=float, default=1200.0)
    p.add_argument("--canvas-height", type=float, default=800.0)
    p.add_argument("--gap", type=float)
    p.add_argument("--padding", type=float)
    p.add_argument("--column-count", type=int, help="Pin the column count instead of searching")
    return p.parse_args(argv)


def main(argv: List[str]) -> int:
    args = parse_args(argv)
    if args.images_per_request < 1:
        print("--images-per-request must be >= 1", file=sys.stderr)
        return 2
    payload_args = {
        "images_per_request": args.images_per_request,
        "canvas_width": args.canvas_width,
        "canvas_height": args.canvas_height,
        "gap": args.gap,
        "padding": args.padding,
        "column_count": args.column_count,
    }
    asyncio.run(run_benchmark(url=args.url, total_requests=args.requests, concurrency=args.concurrency, payload_args=payload_args))
    return 0


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
