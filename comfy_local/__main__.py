"""
Comfy Local - CLI Entry Point
Run with: python -m comfy_local <command>
"""

import argparse
import signal
import sys

from pydantic import ValidationError as PydanticValidationError

from .exceptions import ComfyLocalError, format_error_for_user


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="comfy_local", description="Comfy Local - drive a local ComfyUI server"
    )
    parser.add_argument("--version", "-v", action="store_true", help="Show version and exit")
    parser.add_argument("--url", type=str, default=None, help="ComfyUI server URL")
    parser.add_argument("--log-level", type=str, default=None, help="DEBUG, INFO, WARNING, ...")

    sub = parser.add_subparsers(dest="command")

    gen = sub.add_parser("generate", help="Generate images")
    gen.add_argument("prompt", help="Positive prompt")
    gen.add_argument("--negative", "-n", default=None, help="Negative prompt")
    gen.add_argument(
        "--model", "-m", action="append", default=None, help="Model name (repeatable)"
    )
    gen.add_argument("--all-models", action="store_true", help="Run every compatible model")
    gen.add_argument("--width", type=int, default=None)
    gen.add_argument("--height", type=int, default=None)
    gen.add_argument("--steps", type=int, default=None)
    gen.add_argument("--cfg", type=float, default=None)
    gen.add_argument("--seed", type=int, default=-1)
    gen.add_argument("--sampler", default=None)
    gen.add_argument("--scheduler", default=None)
    gen.add_argument("--image", "-i", default=None, help="Source image for image-to-image")
    gen.add_argument("--strength", type=float, default=None, help="img2img strength (0-1)")
    gen.add_argument("--output", "-o", default=None, help="Output file")
    gen.add_argument("--output-dir", default=None, help="Output directory")
    gen.add_argument(
        "--timeout", type=float, default=None, help="Completion deadline in seconds (0 = none)"
    )
    gen.add_argument("--no-start", action="store_true", help="Do not start ComfyUI if it is down")

    sub.add_parser("stop", help="Stop the ComfyUI process")
    sub.add_parser("queue-empty", help="Exit 0 when the queue is empty, 1 otherwise")

    paths = sub.add_parser("model-path", help="Show where ComfyUI keeps models")
    paths.add_argument("--subfolder", default="checkpoints")
    paths.add_argument("--all", action="store_true", help="List every candidate path")

    bg = sub.add_parser("background", help="Set or clear the canvas background image")
    bg.add_argument("image", nargs="?", default=None)
    bg.add_argument("--clear", action="store_true")

    return parser


def _generate(args) -> int:
    from .client import ComfyClient
    from .orchestrator import ALL_MODELS, GenerationOrchestrator
    from .poller import CancellationToken
    from .process import ProcessSupervisor
    from .validation import GenerationRequest

    fields = {
        "prompt": args.prompt,
        "negative_prompt": args.negative,
        "width": args.width,
        "height": args.height,
        "steps": args.steps,
        "cfg": args.cfg,
        "seed": args.seed,
        "sampler": args.sampler,
        "scheduler": args.scheduler,
        "source_image": args.image,
        "strength": args.strength,
        "output_file": args.output,
    }
    request = GenerationRequest(**{k: v for k, v in fields.items() if v is not None})

    cancel = CancellationToken()
    signal.signal(signal.SIGINT, lambda *_: cancel.cancel())

    with ComfyClient(args.url) as client:
        orchestrator = GenerationOrchestrator(
            client=client, supervisor=None if args.no_start else ProcessSupervisor()
        )
        batch = orchestrator.generate(
            request,
            models=ALL_MODELS if args.all_models else args.model,
            output_dir=args.output_dir,
            deadline=args.timeout,
            cancel=cancel,
            on_progress=lambda update: print(f"  {update.describe()}", flush=True),
        )

    for path in batch.images:
        print(path)
    for model, error in batch.errors:
        print(f"{model}: {format_error_for_user(error)}", file=sys.stderr)
    return 0 if batch.ok else 1


def main(argv=None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    if args.version:
        from . import __version__

        print(f"comfy-local v{__version__}")
        return 0

    if args.log_level:
        from .logging_config import set_log_level

        set_log_level(args.log_level)

    try:
        if args.command == "generate":
            return _generate(args)

        if args.command == "stop":
            from .process import ProcessSupervisor

            ProcessSupervisor().stop()
            return 0

        if args.command == "queue-empty":
            from .client import ComfyClient

            with ComfyClient(args.url) as client:
                empty = client.is_queue_empty()
            print("empty" if empty else "busy")
            return 0 if empty else 1

        if args.command == "model-path":
            from .models import ModelPathResolver

            result = ModelPathResolver().resolve(args.subfolder, return_all=args.all)
            for path in result if isinstance(result, list) else [result]:
                print(path)
            return 0

        if args.command == "background":
            from .ui_settings import clear_background_image, set_background_image

            if args.clear:
                clear_background_image()
            elif args.image:
                print(set_background_image(args.image))
            else:
                parser.error("background needs an image or --clear")
            return 0

    except ComfyLocalError as e:
        print(f"Error: {format_error_for_user(e)}", file=sys.stderr)
        for suggestion in e.suggestions:
            print(f"  - {suggestion}", file=sys.stderr)
        return 1
    except PydanticValidationError as e:
        print(f"Invalid input: {e}", file=sys.stderr)
        return 2

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
