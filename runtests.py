#!/usr/bin/env python

import argparse
import os
import sys
import warnings

import pytest

os.environ["DJANGO_SETTINGS_MODULE"] = "nestedset.tests.settings"


def make_parser():
    parser = argparse.ArgumentParser()
    parser.add_argument(
        "--deprecation",
        choices=["all", "pending", "imminent", "none"],
        default="imminent",
    )
    parser.add_argument("--postgres", action="store_true")
    parser.add_argument("--mysql", action="store_true")
    return parser


def parse_args(args=None):
    return make_parser().parse_known_args(args)


def runtests():
    args, rest = parse_args()

    only_nestedset = r"^nestedset(\.|$)"
    if args.deprecation == "all":
        # Show all deprecation warnings from all packages
        warnings.simplefilter("default", DeprecationWarning)
        warnings.simplefilter("default", PendingDeprecationWarning)
    elif args.deprecation == "pending":
        # Show all deprecation warnings from nestedset
        warnings.filterwarnings(
            "default", category=DeprecationWarning, module=only_nestedset
        )
        warnings.filterwarnings(
            "default", category=PendingDeprecationWarning, module=only_nestedset
        )
    elif args.deprecation == "imminent":
        # Show only imminent deprecation warnings from nestedset
        warnings.filterwarnings(
            "default", category=DeprecationWarning, module=only_nestedset
        )
    elif args.deprecation == "none":
        # Deprecation warnings are ignored by default
        pass

    if args.postgres:
        os.environ["DATABASE_ENGINE"] = "psql"
    elif args.mysql:
        os.environ["DATABASE_ENGINE"] = "mysql"

    return pytest.main(["nestedset"] + rest)


if __name__ == "__main__":
    sys.exit(runtests())
