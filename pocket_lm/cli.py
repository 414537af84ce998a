"""
pocket-lm :: CLI

Usage:
    pocket-lm serve --manifest models.json [--port 8000] [--host 127.0.0.1] [--preload m1,m2]
    pocket-lm list --manifest models.json
    pocket-lm generate <model> <prompt> --manifest models.json [--max-tokens 64] [--seed 0]
    pocket-lm check <model> --manifest models.json

Every command also reads --config (JSON) and POCKET_LM_* environment
variables; explicit flags win.

INL - 2025
"""

import argparse
import asyncio
import functools
import os
import sys

from pocket_lm.core.config import WorkerConfig


def build_config(args) -> WorkerConfig:
    """defaults < --config file < POCKET_LM_* env < flags"""
    config = WorkerConfig.from_json(args.config) if args.config else WorkerConfig()
    config.apply_env()
    for flag, attr in (
        ("manifest", "manifest_path"),
        ("device", "device"),
        ("tokenizer", "tokenizer"),
        ("tokenizer_path", "tokenizer_path"),
        ("chat_template", "chat_template_path"),
        ("log_level", "log_level"),
        ("log_file", "log_file"),
        ("host", "host"),
        ("port", "port"),
        ("api_key", "api_key"),
    ):
        value = getattr(args, flag, None)
        if value is not None:
            setattr(config, attr, value)
    if getattr(args, "json_logs", False):
        config.json_logs = True
    return config


def build_worker(config: WorkerConfig):
    """Registry + tokenizer + worker from a config. Exits when no manifest is set."""
    from pocket_lm.core.loader import device_for, open_session
    from pocket_lm.core.prompts import ChatTemplate
    from pocket_lm.core.registry import ModelRegistry
    from pocket_lm.core.tokenizer import create_tokenizer
    from pocket_lm.engine.worker import InferenceWorker

    if not config.manifest_path:
        print("error: no model manifest (use --manifest or POCKET_LM_MANIFEST_PATH)", file=sys.stderr)
        sys.exit(2)

    config.device = device_for(config.device)
    registry = ModelRegistry.from_manifest(
        config.manifest_path,
        session_factory=functools.partial(open_session, device=config.device),
    )
    chat_template = ChatTemplate.from_file(config.chat_template_path) if config.chat_template_path else None
    return InferenceWorker(
        registry,
        tokenizer=create_tokenizer(config.tokenizer, config.tokenizer_path),
        config=config,
        chat_template=chat_template,
    )


def _setup_logging(config: WorkerConfig):
    from pocket_lm.core.logging import setup_logging
    setup_logging(level=config.log_level, json_output=config.json_logs, log_file=config.log_file)


def cmd_serve(args):
    """Start the HTTP server."""
    from pocket_lm.api.server import PocketServer

    config = build_config(args)
    _setup_logging(config)
    worker = build_worker(config)
    preload = [m for m in (args.preload or "").split(",") if m]

    print(f"pocket-lm :: serving {config.manifest_path}")
    print(f"  host={config.host} port={config.port} device={config.device} tokenizer={config.tokenizer}")
    server = PocketServer(worker, host=config.host, port=config.port, api_key=config.api_key, preload=preload)
    server.run()


def cmd_list(args):
    """List registered models."""
    from pocket_lm.core.registry import load_manifest

    config = build_config(args)
    if not config.manifest_path:
        print("error: no model manifest (use --manifest or POCKET_LM_MANIFEST_PATH)", file=sys.stderr)
        sys.exit(2)

    models = load_manifest(config.manifest_path)
    if not models:
        print("No models registered.")
        return

    print(f"{'ID':<25} {'Size':>8} {'Tokens':>7} {'Capabilities':<28} {'Description'}")
    print("-" * 90)
    for m in models:
        caps = ",".join(sorted(m.capabilities))
        print(f"{m.id:<25} {m.size:>8} {m.token_limit:>7} {caps:<28} {m.description}")


def cmd_generate(args):
    """Load one model, generate once, print the text."""
    config = build_config(args)
    _setup_logging(config)
    worker = build_worker(config)

    async def _run():
        await worker.initialize()
        if not await worker.load_model(args.model):
            return None
        try:
            return await worker.generate(
                args.model,
                args.prompt,
                max_tokens=args.max_tokens,
                temperature=args.temperature,
                top_p=args.top_p,
                top_k=args.top_k,
                stop_sequences=args.stop,
                seed=args.seed,
            )
        finally:
            await worker.cleanup()

    result = asyncio.run(_run())
    if result is None:
        print(f"error: could not load {args.model}", file=sys.stderr)
        sys.exit(1)
    print(result.text)
    if not result.ok:
        sys.exit(1)
    print(
        f"\n[{result.tokens_generated} tokens, {result.elapsed_ms:.0f}ms, {result.finish_reason}]",
        file=sys.stderr,
    )


def cmd_check(args):
    """Check a model: descriptor, artifact on disk, and a real load/unload."""
    config = build_config(args)
    _setup_logging(config)
    worker = build_worker(config)

    descriptor = worker.registry.get_descriptor(args.model)
    if descriptor is None:
        ids = ", ".join(d.id for d in worker.registry.list_descriptors()) or "none"
        print(f"Unknown model: {args.model}. Available: {ids}")
        sys.exit(1)

    print(f"Model:        {descriptor.id}")
    print(f"Name:         {descriptor.display_name}")
    print(f"Artifact:     {descriptor.artifact_location}")
    print(f"Capabilities: {', '.join(sorted(descriptor.capabilities)) or '-'}")
    print(f"Token limit:  {descriptor.token_limit}")

    location = descriptor.artifact_location
    if not os.path.exists(location):
        print(f"  artifact     MISSING")
        sys.exit(1)
    if os.path.isfile(location):
        print(f"  artifact     OK ({os.path.getsize(location) / 1e6:.1f} MB)")
    else:
        print(f"  artifact     OK (directory)")

    async def _load_unload():
        await worker.initialize()
        loaded = await worker.load_model(args.model)
        unloaded = await worker.unload_model(args.model) if loaded else False
        return loaded, unloaded

    loaded, unloaded = asyncio.run(_load_unload())
    print(f"  load         {'OK' if loaded else 'FAILED'}")
    if loaded:
        print(f"  unload       {'OK' if unloaded else 'FAILED'}")
    if not (loaded and unloaded):
        sys.exit(1)


def _add_common(p):
    p.add_argument("--manifest", default=None, help="Model manifest JSON ({\"models\": [...]})")
    p.add_argument("--config", default=None, help="Worker config JSON")


def _add_runtime(p):
    p.add_argument("--device", default=None, help="cpu, cuda, cuda:N or auto")
    p.add_argument("--tokenizer", default=None, choices=["word", "char", "subword"])
    p.add_argument("--tokenizer-path", default=None, help="tokenizer.json for --tokenizer subword")
    p.add_argument("--log-level", default=None, choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    p.add_argument("--log-file", default=None)
    p.add_argument("--json-logs", action="store_true", help="JSON log lines on stderr")


def main():
    parser = argparse.ArgumentParser(prog="pocket-lm", description="Local text-generation runtime")
    sub = parser.add_subparsers(dest="command")

    # serve
    p_serve = sub.add_parser("serve", help="Start the HTTP server")
    _add_common(p_serve)
    _add_runtime(p_serve)
    p_serve.add_argument("--host", default=None)
    p_serve.add_argument("--port", type=int, default=None)
    p_serve.add_argument("--chat-template", default=None, help="Path to a Jinja chat template")
    p_serve.add_argument("--api-key", default=None, help="Require 'Authorization: Bearer <key>' on /v1/*")
    p_serve.add_argument("--preload", default=None, help="Comma-separated model ids to load at startup")
    p_serve.set_defaults(func=cmd_serve)

    # list
    p_list = sub.add_parser("list", help="List registered models")
    _add_common(p_list)
    p_list.set_defaults(func=cmd_list)

    # generate
    p_gen = sub.add_parser("generate", help="Generate text once")
    _add_common(p_gen)
    _add_runtime(p_gen)
    p_gen.add_argument("model", help="Model id from the manifest")
    p_gen.add_argument("prompt")
    p_gen.add_argument("--max-tokens", type=int, default=None)
    p_gen.add_argument("--temperature", type=float, default=None)
    p_gen.add_argument("--top-p", type=float, default=None)
    p_gen.add_argument("--top-k", type=int, default=None)
    p_gen.add_argument("--stop", action="append", default=None, help="Stop sequence (repeatable)")
    p_gen.add_argument("--seed", type=int, default=None)
    p_gen.set_defaults(func=cmd_generate)

    # check
    p_check = sub.add_parser("check", help="Check model availability")
    _add_common(p_check)
    _add_runtime(p_check)
    p_check.add_argument("model", help="Model id from the manifest")
    p_check.set_defaults(func=cmd_check)

    args = parser.parse_args()
    if not args.command:
        parser.print_help()
        sys.exit(1)

    args.func(args)


if __name__ == "__main__":
    main()
