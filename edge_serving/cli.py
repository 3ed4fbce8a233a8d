"""
Edge serving command line

Commands:
    edge-serving run [--model REF] [--config PATH] [--n-predict N]
        Interactive loop: one prompt per line, `quit` or `exit` to stop
    edge-serving fetch REF
        Download a model (content hash or hf://<repo_id>/<filename>)
    edge-serving stats [--model REF]
        Load the model and print runtime stats as JSON
"""

import argparse
import logging
import sys
from typing import Any, Dict, Optional, TextIO

import orjson

from edge_serving.config_loader import Config, load_config
from edge_serving.content_fetcher import create_content_fetcher
from edge_serving.errors import ContentFetchError, InitializationError
from edge_serving.processor import RequestProcessor
from edge_serving.schemas import InferenceRequest

logger = logging.getLogger(__name__)

EXIT_COMMANDS = ("quit", "exit")


def configure_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='[%(asctime)s] [%(levelname)s] %(name)s: %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
        stream=sys.stderr,
    )


def run_interactive(
    processor: RequestProcessor,
    input_stream: TextIO = sys.stdin,
    output: TextIO = sys.stdout,
    overrides: Optional[Dict[str, Any]] = None,
) -> int:
    """
    Read prompts line by line until quit/exit or end of input

    Each prompt gets the id local_<n>, counting from 1; blank lines are
    skipped without consuming an id.

    Returns:
        Number of prompts submitted
    """
    counter = 0
    output.write("Enter a prompt (quit or exit to stop)\n")
    while True:
        output.write("> ")
        output.flush()
        line = input_stream.readline()
        if not line:
            break
        prompt = line.strip()
        if prompt.lower() in EXIT_COMMANDS:
            break
        if not prompt:
            continue

        counter += 1
        request = InferenceRequest(
            request_id=f"local_{counter}",
            prompt=prompt,
            config_overrides=dict(overrides or {}),
        )
        envelope = processor.submit(request)
        if envelope["success"]:
            output.write(f"{envelope['response']}\n")
            suffix = " (incomplete)" if envelope.get("incomplete") else ""
            output.write(f"[{envelope['request_id']}] {envelope['processing_time_ms']:.0f} ms{suffix}\n")
        else:
            output.write(f"[{envelope['request_id']}] error: {envelope['error']}\n")
    return counter


def _build_processor(config: Config, model: Optional[str]) -> RequestProcessor:
    processor = RequestProcessor(config)
    if not processor.initialize(model):
        processor.shutdown()
        raise InitializationError("model could not be loaded", model or config.default_model)
    return processor


def main(argv: Optional[list] = None) -> int:
    """CLI entry point"""
    parser = argparse.ArgumentParser(
        prog="edge-serving",
        description="GGUF edge inference serving",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--config", help="Path to runtime.yaml")
    parser.add_argument("--env", help="Config environment (production/development/test)")
    parser.add_argument("--verbose", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Command to execute")

    run_parser = subparsers.add_parser("run", help="Interactive prompt loop")
    run_parser.add_argument("--model", help="Model path, content hash or hf:// reference")
    run_parser.add_argument("--n-predict", type=int, help="Maximum tokens per response")

    fetch_parser = subparsers.add_parser("fetch", help="Download a model")
    fetch_parser.add_argument("reference", help="Content hash or hf://<repo_id>/<filename>")

    stats_parser = subparsers.add_parser("stats", help="Load the model and print stats")
    stats_parser.add_argument("--model", help="Model path, content hash or hf:// reference")

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 0

    try:
        config = load_config(args.config, args.env)
    except (FileNotFoundError, ValueError) as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 2

    configure_logging(args.verbose or config.debug)

    try:
        if args.command == "fetch":
            path = create_content_fetcher(config).fetch(args.reference)
            print(path)
            return 0

        processor = _build_processor(config, args.model)
        try:
            if args.command == "run":
                overrides = {"n_predict": args.n_predict} if args.n_predict is not None else None
                run_interactive(processor, overrides=overrides)
            elif args.command == "stats":
                print(orjson.dumps(processor.get_stats(), option=orjson.OPT_INDENT_2).decode("utf-8"))
        finally:
            processor.shutdown()
        return 0

    except ContentFetchError as exc:
        logger.error(exc.message)
        return 1
    except InitializationError as exc:
        logger.error(exc.message)
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
