"""Bring a local cluster up, produce through the gateway, tear it down."""

import argparse
import logging
import sys

from .config import DEFAULT_NUM_BROKERS
from .harness import ClusterHarness


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--brokers", type=int, default=DEFAULT_NUM_BROKERS, help="number of brokers to start")
    parser.add_argument("--topic", default="smoke", help="topic to create and produce to")
    parser.add_argument("--messages", type=int, default=5, help="records to produce")
    parser.add_argument("-v", "--verbose", action="store_true")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    with ClusterHarness(num_brokers=args.brokers) as harness:
        print(f"coordination.connect={harness.zk_connect}")
        print(f"bootstrap.servers={harness.broker_list}")
        print(f"gateway={harness.gateway_url}")

        brokers = harness.request("/brokers").get().json()["brokers"]
        print(f"GET /brokers -> {brokers}")
        if len(brokers) != args.brokers:
            print(f"expected {args.brokers} brokers, gateway reports {brokers}", file=sys.stderr)
            return 1

        harness.create_topic(args.topic)
        records = [{"value": f"msg-{i}"} for i in range(args.messages)]
        resp = harness.request("/topics/{name}", "name", args.topic).post(json={"records": records})
        if resp.status_code != 200:
            print(f"produce failed: {resp.status_code} {resp.text}", file=sys.stderr)
            return 1
        print(f"POST /topics/{args.topic} -> {resp.json()['offsets']}")

    print("cluster harness smoke test passed")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
