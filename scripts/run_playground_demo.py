#!/usr/bin/env python
"""
Post sample plans to a running playground service and print each trace.

Usage:
    python scripts/run_playground_demo.py --base-url http://localhost:3000
    python scripts/run_playground_demo.py --plan agent_payment --validate-only
"""

import argparse
import json
import sys

import requests

RECIPIENT = "0xB3fdA213Ad32798724aA7aF685a8DD46f3cbd7f7"

PLANS = {
    "simple_payment": {
        "planId": "simple-payment",
        "description": "Read the wallet balance, then pay half a TCRO",
        "actions": [
            {"type": "read_balance", "token": "TCRO"},
            {"type": "x402_payment", "to": RECIPIENT, "amount": "0.5", "token": "TCRO"},
        ],
        "seed": {"balances": {"TCRO": "100"}},
    },
    "guarded_payment": {
        "planId": "guarded-payment",
        "description": "Only pay when the balance clears a threshold",
        "actions": [
            {"type": "read_balance"},
            {"type": "condition", "condition": "step_0.balance > 5"},
            {"type": "x402_payment", "to": RECIPIENT, "amount": "1"},
        ],
    },
    "agent_payment": {
        "planId": "agent-payment",
        "description": "Let the reasoning agent size the payment",
        "actions": [
            {"type": "read_balance"},
            {"type": "llm_agent", "prompt": "How much should we pay?",
             "context": {"balance": "step_0.balance"}},
            {"type": "condition", "condition": "step_1.parameters.shouldExecute == true"},
            {"type": "x402_payment", "to": RECIPIENT, "amount": "step_1.parameters.amount"},
        ],
    },
}


def print_trace(trace):
    print(f"run {trace['runId']} plan={trace.get('planId')} status={trace['status']}")
    for step in trace["steps"]:
        line = f"  [{step['index']}] {step['action']['type']:<14} {step['status']}"
        if step.get("error"):
            line += f"  {step['error']['kind']}: {step['error']['message']}"
        print(line)
    for warning in trace.get("warnings", []):
        print(f"  warning: {warning}")
    if trace.get("virtualState"):
        print("  balances:", json.dumps(trace["virtualState"]["wallet"]["balances"]))


def main():
    parser = argparse.ArgumentParser(description="Run sample plans against the playground API")
    parser.add_argument("--base-url", default="http://localhost:3000")
    parser.add_argument("--plan", choices=sorted(PLANS), action="append",
                        help="plan to run (repeatable); defaults to all")
    parser.add_argument("--validate-only", action="store_true")
    args = parser.parse_args()

    api = f"{args.base_url.rstrip('/')}/api/playground"
    failures = 0
    for name in args.plan or sorted(PLANS):
        plan = PLANS[name]
        try:
            if args.validate_only:
                r = requests.post(f"{api}/validate", json=plan, timeout=30)
                print(f"{name}: {json.dumps(r.json(), indent=2)}")
                continue
            r = requests.post(f"{api}/simulate", json=plan, timeout=60)
        except requests.RequestException as e:
            print(f"{name}: request failed: {e}")
            failures += 1
            continue
        body = r.json()
        if r.status_code != 200:
            failures += 1
            print(f"{name}: HTTP {r.status_code} {json.dumps(body.get('errors', body))}")
            if "trace" not in body:
                continue
        print_trace(body["trace"])
    return 1 if failures else 0


if __name__ == "__main__":
    sys.exit(main())
