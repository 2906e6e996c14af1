#!/usr/bin/env python3
"""
Scenario validation script for MoulinetteSim.

This script validates JSON scenario files against the defined schema.
"""

import json
import sys
import argparse
from pathlib import Path
from jsonschema import Draft7Validator
from typing import List, Tuple


def load_schema() -> dict:
    """Load the JSON schema from schema.json file."""
    schema_path = Path(__file__).parent / "schema.json"
    try:
        with open(schema_path, 'r') as f:
            return json.load(f)
    except FileNotFoundError:
        print(f"Error: Schema file not found at {schema_path}")
        sys.exit(1)
    except json.JSONDecodeError as e:
        print(f"Error: Invalid JSON in schema file: {e}")
        sys.exit(1)


def validate_scenario_data(scenario_data: dict, schema: dict) -> Tuple[bool, List[str]]:
    """
    Validate scenario data directly against the schema.

    Args:
        scenario_data: Dictionary containing scenario data
        schema: JSON schema dictionary

    Returns:
        Tuple of (is_valid, error_messages)
    """
    validator = Draft7Validator(schema)
    schema_errors = [_format_schema_error(error) for error in validator.iter_errors(scenario_data)]
    if schema_errors:
        return False, schema_errors

    custom_errors = _custom_validations(scenario_data)
    if custom_errors:
        return False, custom_errors

    return True, []


def _format_schema_error(error) -> str:
    """Render a jsonschema error with the path of the offending key."""
    error_path = " -> ".join(str(p) for p in error.absolute_path)
    if error_path:
        return f"Error at '{error_path}': {error.message}"
    return f"Error: {error.message}"


def validate_scenario_file(scenario_path: Path, schema: dict) -> Tuple[bool, List[str]]:
    """
    Validate a single scenario file against the schema.

    Args:
        scenario_path: Path to the scenario JSON file
        schema: JSON schema dictionary

    Returns:
        Tuple of (is_valid, error_messages)
    """
    try:
        with open(scenario_path, 'r') as f:
            scenario_data = json.load(f)
    except FileNotFoundError:
        return False, [f"File not found: {scenario_path}"]
    except json.JSONDecodeError as e:
        return False, [f"Invalid JSON in {scenario_path}: {e}"]

    return validate_scenario_data(scenario_data, schema)


def _custom_validations(scenario_data: dict) -> List[str]:
    """
    Perform additional cross-field validations beyond the schema.

    Args:
        scenario_data: Loaded scenario JSON data

    Returns:
        List of validation error messages
    """
    errors = []
    channels = scenario_data.get("channels", {})
    dam = channels.get("dam", {})

    # An enabled dam needs a non-empty cycle
    if dam.get("enabled"):
        block_time = dam.get("blockTime", 5.0)
        open_time = dam.get("openTime", 2.0)
        if block_time + open_time <= 0:
            errors.append(f"Dam cycle is empty (blockTime={block_time}, openTime={open_time})")

    # Scheduling and the dam only exist with two populations
    if scenario_data.get("scenario") == "Waterfall":
        if dam.get("enabled"):
            errors.append("Dam is enabled but only applies to the Channels scenario")
        priority_mode = channels.get("priorityMode", "FIFO")
        if priority_mode != "FIFO":
            errors.append(f"Priority mode {priority_mode} only applies to the Channels scenario")

    return errors


def main():
    """Main function to validate scenario files."""
    parser = argparse.ArgumentParser(description="Validate MoulinetteSim scenario files")
    parser.add_argument("files", nargs="+", help="Scenario JSON files to validate")
    parser.add_argument("--verbose", "-v", action="store_true",
                        help="Show detailed validation information")

    args = parser.parse_args()

    schema = load_schema()

    all_valid = True
    for file_path in args.files:
        scenario_path = Path(file_path)

        if args.verbose:
            print(f"Validating {scenario_path}...")

        is_valid, error_messages = validate_scenario_file(scenario_path, schema)

        if is_valid:
            print(f"✓ {scenario_path} is valid")
        else:
            print(f"✗ {scenario_path} is invalid:")
            for error in error_messages:
                print(f"  - {error}")
            all_valid = False

    if all_valid:
        print(f"\nAll {len(args.files)} scenario files are valid!")
        sys.exit(0)
    else:
        print("\nValidation failed for some files.")
        sys.exit(1)


if __name__ == "__main__":
    main()
