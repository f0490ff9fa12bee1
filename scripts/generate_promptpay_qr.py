"""Write a PromptPay QR image for a company payment id."""

from __future__ import annotations

import argparse
from pathlib import Path

from delivery_app.promptpay import build_promptpay_payload, generate_qr_png, normalize_amount, normalize_target


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Generate a PromptPay QR code PNG")
    parser.add_argument("target", help="PromptPay id: mobile number, national id or e-wallet id")
    parser.add_argument(
        "--amount",
        default=None,
        help="Fixed amount in THB; omit to let the payer enter it",
    )
    parser.add_argument("--output", default="qr_codes/promptpay.png", help="Destination PNG path")
    parser.add_argument("--emv", action="store_true", help="Print the EMV payload instead of writing a PNG")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    target = normalize_target(args.target)
    amount = normalize_amount(args.amount)
    payload = build_promptpay_payload(target, amount)

    if args.emv:
        print(payload)
        return

    output_path = Path(args.output)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_bytes(generate_qr_png(payload))
    print(f"PromptPay QR for {target} -> {output_path}")


if __name__ == "__main__":
    main()
