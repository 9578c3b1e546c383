#!/usr/bin/env python3
"""
CLI entrypoint for the survey quality-control pipeline.
Thin wrapper around pipeline.run_pipeline().
"""
import logging

from .pipeline import _main as pipeline_main


def main():
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    pipeline_main()


if __name__ == "__main__":
    main()
