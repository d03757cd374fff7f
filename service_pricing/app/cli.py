#!/usr/bin/env python3
"""
Command-line pricing for the VAT filing pricing engine.

Loads a rule file, prices one request and prints the result as JSON:

    vat-pricing --rules rules.yaml --service-type StandardFiling \
        --volume 500 --frequency Quarterly --country GB --country DE
"""

import argparse
import json
import sys
from datetime import date
from pathlib import Path
from typing import List, Optional

from shared.config import get_config
from shared.errors import PricingEngineException
from shared.logging import configure_logging

from .calculation.models import FilingFrequency, ServiceType
from .main import PricingService
from .rules.source import load_rule_source


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Calculate VAT filing service pricing.")
    parser.add_argument("--rules", type=Path, default=None, help="Rule file (YAML or JSON); defaults to PRICING_RULES_FILE")
    parser.add_argument("--service-type", required=True, choices=[s.value for s in ServiceType], help="Service type")
    parser.add_argument("--volume", type=int, required=True, help="Transactions per filing period")
    parser.add_argument("--frequency", required=True, choices=[f.value for f in FilingFrequency], help="Filing frequency")
    parser.add_argument("--country", action="append", dest="countries", required=True, help="Country code; repeat for several")
    parser.add_argument("--service", action="append", dest="services", default=[], help="Additional service code; repeatable")
    parser.add_argument("--as-of", type=date.fromisoformat, default=None, help="Rule reference date (YYYY-MM-DD)")
    parser.add_argument("--currency", default=None, help="Result currency")
    parser.add_argument("--output", type=Path, default=None, help="Optional path to write the JSON result")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = _parse_args(argv)
    config = get_config()
    # stdout carries the result only
    configure_logging(config.service_name, config.log_level, stream=sys.stderr)

    try:
        rules_path = args.rules or config.rules_file
        rule_source = load_rule_source(rules_path) if rules_path else None
        service = PricingService(config=config, rule_source=rule_source)

        request = {
            "service_type": args.service_type,
            "transaction_volume": args.volume,
            "frequency": args.frequency,
            "country_codes": args.countries,
            "additional_services": args.services,
            "as_of": args.as_of,
            "currency_code": args.currency,
        }
        result = service.calculate(request)
    except PricingEngineException as e:
        print(e.to_response().model_dump_json(indent=2), file=sys.stderr)
        return 1

    output = result.to_json()
    print(output)

    if args.output:
        args.output.write_text(output)

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
