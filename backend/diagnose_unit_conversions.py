#!/usr/bin/env python3
"""
Diagnostic script for dosing unit conversions of one product

Prints the unit options of a dosing row, the conversion factor of every
option to the amount unit and any anomalies found while resolving them.

Usage: python diagnose_unit_conversions.py PRODUCT_ID AMOUNT_UNIT_ID [--form-id N] [--rec-dose-unit-id N]
Example: python diagnose_unit_conversions.py 21021 5 --form-id 3
"""

import argparse
import asyncio
import logging

from unit_conversion_engine import UnitConversionEngine
from unit_models import DosingProduct
from unit_providers import create_mongo_provider
from unit_settings import load_settings


async def diagnose_product(engine: UnitConversionEngine, product: DosingProduct):
    print("=" * 80)
    print(f"DIAGNOSING UNIT CONVERSIONS FOR PRODUCT {product.product_id}")
    print("=" * 80)
    print()

    amount_unit = await engine.get_unit(product.amount_unit_id)
    if not amount_unit:
        print(f"❌ Amount unit {product.amount_unit_id} not found!")
        return
    print(f"✓ Amount unit: {amount_unit.name} ({amount_unit.unit_id}, form {amount_unit.form_id})")

    product_units = await engine.get_units(product.product_id)
    print(f"  Product-specific units: {len(product_units)}")
    for unit in product_units:
        print(f"    - {unit.unit_id}: {unit.name} (form {unit.form_id})")
    print()

    result = await engine.get_unit_options_for_product(product)
    if result.derived_form_id:
        print(f"⚠️  Product has no form, derived form {result.derived_form_id} from base unit {product.base_unit_id}")
        print()

    print(f"Unit options: {len(result.unit_options)}")
    for option in result.unit_options:
        factor = await engine.get_factor(option.value, product.amount_unit_id, [product.product_id])
        path = await engine.get_path(option.value, product.amount_unit_id, [product.product_id])
        print(f"  - {option.label:<24} 1 = {factor:.6g} {amount_unit.name}   path {path}")
    print()

    if engine.anomalies:
        print(f"❌ Anomalies: {len(engine.anomalies)}")
        for anomaly in engine.anomalies:
            print(f"  [{anomaly.anomaly_code}] {anomaly.message}")
    else:
        print("✓ No anomalies")

    print()
    print(f"Cache: {engine.cache_stats()}")


def main():
    parser = argparse.ArgumentParser(description="Diagnose dosing unit conversions for a product")
    parser.add_argument("product_id", type=int, help="Product ID")
    parser.add_argument("amount_unit_id", type=int, help="Amount unit ID of the dosing row")
    parser.add_argument("--form-id", type=int, help="Form ID of the dosing row")
    parser.add_argument("--rec-dose-unit-id", type=int, help="Recommended dose unit ID")
    args = parser.parse_args()

    settings = load_settings()
    logging.basicConfig(
        level=settings.log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    provider = create_mongo_provider(settings)
    engine = UnitConversionEngine.from_provider(provider, settings)
    product = DosingProduct(
        product_id=args.product_id,
        amount_unit_id=args.amount_unit_id,
        form_id=args.form_id,
        rec_dose_unit_id=args.rec_dose_unit_id,
    )
    asyncio.run(diagnose_product(engine, product))


if __name__ == "__main__":
    main()
