#!/usr/bin/env python3
"""Entry point for the judge-panel image refinement loop.

Usage:
    # Run a request against a panel defined in agents.json
    python main.py generate "A lighthouse at dusk, watercolor" --agents agents.json

    # Run with options
    python main.py generate "brief" --agents agents.json --threshold 80 --max-iterations 3

    # Inspect the resolved judge panel
    python main.py panel --agents agents.json

agents.json holds a list of agent objects. An agent may carry reference
documents under "documents" as {"filename": ..., "chunks": [text, ...]};
the chunk texts are embedded on load.
"""

import argparse
import json
import logging
import sys
from pathlib import Path

import config


def load_agents(path: Path, store, embedder=None) -> list:
    """Load agents (and their reference documents) from a JSON file into ``store``."""
    from judgeloop.retrieval import embed_document
    from judgeloop.schemas import Agent

    with open(path) as f:
        entries = json.load(f)

    agents = []
    for entry in entries:
        documents = entry.pop("documents", [])
        agent = store.save_agent(Agent(**entry))
        agents.append(agent)
        for document in documents:
            if embedder is None:
                from judgeloop.llm import EmbeddingClient
                embedder = EmbeddingClient()
            store.save_document(
                embed_document(agent.id, document["filename"], document["chunks"], embedder)
            )
    return agents


def run_panel(args: argparse.Namespace):
    """Print the resolved judge panel and any team cycles."""
    from judgeloop.judge import detect_team_cycle, resolve_panel
    from judgeloop.store import MemoryStore

    store = MemoryStore()
    agents = load_agents(args.agents, store)

    print(f"\nLoaded {len(agents)} agents from {args.agents}\n")
    for agent in agents:
        cycle = detect_team_cycle(agent.id, agent.team_agent_ids, store.get_agent)
        if cycle:
            print(f"  Team cycle: {' -> '.join(cycle)}")

    panel = resolve_panel([a.id for a in agents], store.get_agent)
    print("Judge panel:")
    for agent in panel:
        print(
            f"  {agent.name} ({agent.agent_type.value}) "
            f"scoring weight {agent.scoring_weight}, optimization weight {agent.optimization_weight}"
        )
    print()


def run_generate(args: argparse.Namespace):
    """Run a generation request from CLI."""
    from judgeloop.costs import estimated_cost
    from judgeloop.events import EventBus
    from judgeloop.generator import DiffusersImageClient
    from judgeloop.judge import JudgePanel
    from judgeloop.llm import EmbeddingClient, LLMClient
    from judgeloop.pipeline import GenerationOrchestrator
    from judgeloop.retrieval import RetrievalIndex
    from judgeloop.schemas import EventType, GenerationMode, ImageParams
    from judgeloop.store import JsonRunArchive, MemoryStore
    from judgeloop.synthesizer import PromptSynthesizer

    index = RetrievalIndex()
    store = MemoryStore(index=index)
    embedder = EmbeddingClient()
    agents = load_agents(args.agents, store, embedder)
    llm = LLMClient()

    orchestrator = GenerationOrchestrator(
        store=store,
        image_client=DiffusersImageClient(output_dir=args.output_dir),
        panel=JudgePanel(llm, embedder=embedder, index=index),
        synthesizer=PromptSynthesizer(llm),
        events=EventBus(),
        archive=JsonRunArchive(args.output_dir),
    )

    request = orchestrator.create_request(
        brief=args.brief,
        judge_ids=[a.id for a in agents],
        threshold=args.threshold,
        max_iterations=args.max_iterations,
        image_params=ImageParams(
            images_per_generation=args.images_per_generation,
            aspect_ratio=args.aspect_ratio,
            generation_mode=GenerationMode(args.mode),
        ),
        negative_prompts=args.negative_prompt,
        initial_prompt=args.initial_prompt,
    )

    print(f"\n{'='*60}")
    print("Judge-Panel Image Refinement Loop")
    print(f"{'='*60}\n")
    print(f"Brief: {args.brief}")
    print(f"Judges: {', '.join(a.name for a in agents)}")
    print(f"Threshold: {args.threshold}")
    print(f"Mode: {args.mode}")
    print(f"Max iterations: {args.max_iterations}")
    print()

    def on_event(event):
        """Print progress."""
        if event.type != EventType.ITERATION_COMPLETE:
            return
        snapshot = event.data["iteration"]
        print(f"[Iteration {event.iteration_number}] ({snapshot['strategy']})")
        print(f"  Aggregate Score: {snapshot['aggregate_score']:.1f}/100")
        for result in snapshot["judge_results"]:
            print(f"  {result['agent_name']}: {result['score']:.0f} (weight {result['scoring_weight']})")
        if snapshot["failed_judge_ids"]:
            print(f"  Failed judges: {', '.join(snapshot['failed_judge_ids'])}")
        print()

    orchestrator.events.subscribe(request.id, on_event)
    result = orchestrator.run(request.id)

    print(f"{'='*60}")
    print(result.status.value.upper())
    print(f"{'='*60}")
    print(f"Total iterations: {result.current_iteration}")
    print(f"Completion reason: {result.completion_reason.value}")
    if result.error_message:
        print(f"Error: {result.error_message}")
    final_image = result.find_image(result.final_image_id)
    if final_image:
        print(f"Best image: {final_image.url}")
    if result.iterations:
        print(f"\nFinal prompt:")
        print(f"  {result.iterations[-1].prompt_used}")
    print(f"\nEstimated cost: ${estimated_cost(result.costs, orchestrator.prices):.4f}")
    print()


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Judge-Panel Image Refinement Loop",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--log-level",
        default=config.LOG_LEVEL,
        help=f"Logging level (default: {config.LOG_LEVEL})",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Panel command
    panel_parser = subparsers.add_parser("panel", help="Show the resolved judge panel")
    panel_parser.add_argument(
        "--agents", "-a",
        type=Path,
        required=True,
        help="JSON file with agent definitions",
    )

    # Generate command
    gen_parser = subparsers.add_parser("generate", help="Generate images from CLI")
    gen_parser.add_argument(
        "brief",
        type=str,
        help="Description of the desired image",
    )
    gen_parser.add_argument(
        "--agents", "-a",
        type=Path,
        required=True,
        help="JSON file with agent definitions",
    )
    gen_parser.add_argument(
        "--threshold", "-t",
        type=int,
        default=config.DEFAULT_THRESHOLD,
        help=f"Aggregate score (0-100) to stop at (default: {config.DEFAULT_THRESHOLD})",
    )
    gen_parser.add_argument(
        "--max-iterations", "-m",
        type=int,
        default=config.DEFAULT_MAX_ITERATIONS,
        help=f"Maximum iterations (default: {config.DEFAULT_MAX_ITERATIONS})",
    )
    gen_parser.add_argument(
        "--images-per-generation", "-k",
        type=int,
        default=config.DEFAULT_IMAGES_PER_GENERATION,
        help="Candidates generated and judged per iteration",
    )
    gen_parser.add_argument(
        "--aspect-ratio",
        type=str,
        default=None,
        help='Aspect ratio such as "16:9" (default: square)',
    )
    gen_parser.add_argument(
        "--negative-prompt", "-n",
        type=str,
        default=None,
        help="Things to avoid",
    )
    gen_parser.add_argument(
        "--mode",
        choices=["regeneration", "edit", "mixed"],
        default="regeneration",
        help="How later iterations produce candidates (default: regeneration)",
    )
    gen_parser.add_argument(
        "--initial-prompt",
        type=str,
        default=None,
        help="Prompt for the first iteration (default: the brief)",
    )
    gen_parser.add_argument(
        "--output-dir", "-o",
        type=Path,
        default=config.OUTPUTS_DIR,
        help=f"Output directory (default: {config.OUTPUTS_DIR})",
    )

    args = parser.parse_args()
    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "panel":
        run_panel(args)
    elif args.command == "generate":
        run_generate(args)
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
