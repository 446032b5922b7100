#!/usr/bin/env python3
"""
Terminal tip jar.

Leave a tip against a running tip jar server (python app.py):
    python tipjar_cli.py --amount 404 --memo "great stream"
    python tipjar_cli.py --amount 1234 --simulate      # mock mode: pay instantly
    python tipjar_cli.py --toggle-mode                 # development only
"""

import argparse
import logging
import random
import sys
import time

import qrcode

import config
from tipjar_client import LifecycleState, PaymentLifecycle, TipJarAPIError, TipJarClient

logger = logging.getLogger(__name__)

CONFETTI = "*+.o~^"


def print_invoice(flow: PaymentLifecycle) -> None:
    print(f"\nPay with Lightning: {flow.amount} sats\n")
    qr = qrcode.QRCode(border=2)
    qr.add_data(flow.payment_request)
    qr.make(fit=True)
    qr.print_ascii(out=sys.stdout, invert=True)
    print(f"\n{flow.payment_request}\n")
    print("Waiting for payment... this updates automatically (Ctrl-C to cancel).")


def celebrate(flow: PaymentLifecycle) -> None:
    print(f"\nThank You! Your payment of {flow.amount} sats has been received.")
    if flow.preimage:
        print(f"preimage: {flow.preimage}")
    while flow.celebrating:
        line = "".join(random.choice(CONFETTI + "  ") for _ in range(60))
        print(line)
        time.sleep(0.25)


def toggle_mode(client: TipJarClient) -> int:
    try:
        use_mock = client.set_mode(not client.get_mode())
    except TipJarAPIError as e:
        print(f"[FAIL] {e.message}", file=sys.stderr)
        return 1
    print(f"Using {'mock invoices' if use_mock else 'real Lightning backend'}")
    return 0


def run_tip(args: argparse.Namespace, client: TipJarClient) -> int:
    with PaymentLifecycle(client) as flow:
        if args.amount in config.PRESET_AMOUNTS:
            flow.select_amount(args.amount)
        else:
            flow.select_amount("custom")
            if not flow.set_custom_amount(str(args.amount)):
                flow.set_custom_amount("")

        if not flow.generate_invoice(memo=args.memo):
            print(f"[FAIL] {flow.error}", file=sys.stderr)
            return 1

        print_invoice(flow)
        if args.simulate:
            flow.simulate_payment()

        try:
            while flow.state is LifecycleState.AWAITING_PAYMENT:
                time.sleep(0.2)
        except KeyboardInterrupt:
            flow.cancel()
            print("\nCancelled.")
            return 130

        celebrate(flow)
        flow.reset()
    return 0


def main():
    parser = argparse.ArgumentParser(description="Lightning Tip Jar (terminal)")
    parser.add_argument("--url", default=config.TIPJAR_URL, help="Tip jar server URL")
    parser.add_argument("--amount", type=int, default=config.DEFAULT_AMOUNT, help="Tip in sats")
    parser.add_argument("--memo", default="", help="Message to send with the tip")
    parser.add_argument("--simulate", action="store_true", help="[DEV] Simulate payment (mock mode)")
    parser.add_argument("--toggle-mode", action="store_true", help="[DEV] Switch mock/real backend")
    parser.add_argument("-v", "--verbose", action="store_true")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    client = TipJarClient(args.url)
    if args.toggle_mode:
        sys.exit(toggle_mode(client))
    sys.exit(run_tip(args, client))


if __name__ == "__main__":
    main()
