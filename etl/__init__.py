# WORKFLOW: ETL package for reference data used by the duty calculation engine.
# Used by: Formula source selector, note resolver, bootstrap script
# Modules include:
# 1. duty_parser.py - Parse rate text (free, ad valorem, specific, compound, ranges) into formulas
# 2. policy_seed.py - Seed rows for reciprocal tariff policies and entry fees
#
# ETL flow: Rate text / seed rows -> Formulas and policy records -> Reference tables

"""
ETL package for Landed Cost Duty API reference data.
"""
