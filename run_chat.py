"""Chat with an ONNX-exported causal LM from the Hugging Face Hub.

Downloads the config, tokenizer and graph for a model repo (cached under
$CACHE_DIR, default ./models), renders a chat prompt, and streams the
assistant's reply token by token.

Usage:
    python run_chat.py [--model onnx-community/SmolLM-135M-ONNX] [--prompt "..."] [--tokens 64]
"""

import argparse
import logging
import os
import time

import numpy as np

from ortgen import bootstrap
from ortgen.pipeline import pipeline
from ortgen.schema import describe_schema
from ortgen.session import StepEvent

DEFAULT_MODEL_ID = "onnx-community/SmolLM-135M-ONNX"


def main():
    parser = argparse.ArgumentParser(description="Chat with an ONNX causal LM")
    parser.add_argument("--model", type=str,
                        default=os.environ.get("MODEL_ID") or DEFAULT_MODEL_ID,
                        help=f"HuggingFace model ID (default: $MODEL_ID or {DEFAULT_MODEL_ID})")
    parser.add_argument("--system", type=str, default="You are a helpful assistant.",
                        help="System message")
    parser.add_argument("--prompt", type=str,
                        default="What is the capital of France?",
                        help="User message")
    parser.add_argument("--tokens", type=int, default=64,
                        help="Maximum number of tokens to generate")
    parser.add_argument("--dtype", type=str, default="q4",
                        help="Weight precision: q4, fp16, or fp32 (default: q4)")
    parser.add_argument("--sample", action="store_true",
                        help="Sample from softmax instead of greedy decoding")
    parser.add_argument("--seed", type=int, default=None,
                        help="RNG seed for --sample")
    parser.add_argument("--verbose", action="store_true",
                        help="Enable INFO logging")
    args = parser.parse_args()

    if args.verbose:
        logging.basicConfig(level=logging.INFO,
                            format="%(asctime)s %(name)s %(levelname)s: %(message)s")

    lib = bootstrap.ensure()
    print(f"ONNX Runtime: {lib}")

    # --- Load ---
    print(f"Loading {args.model} ({args.dtype})...")
    t0 = time.perf_counter()
    pipe = pipeline("text-generation", args.model, dtype=args.dtype)
    load_time = time.perf_counter() - t0
    print(f"  Loaded in {load_time:.1f}s")
    print(describe_schema(pipe.session.schema))

    messages = [
        {"role": "system", "content": args.system},
        {"role": "user", "content": args.prompt},
    ]
    print(f"\nUser: {args.prompt}")
    print("Assistant:", end="", flush=True)

    step_times = []
    last = [time.perf_counter()]

    def on_step(event: StepEvent) -> bool:
        now = time.perf_counter()
        step_times.append((now - last[0]) * 1000)
        last[0] = now
        print(event.delta_text, end="", flush=True)
        return True

    rng = np.random.default_rng(args.seed) if args.sample else None

    # --- Generate ---
    gen_start = time.perf_counter()
    out = pipe(messages, max_new_tokens=args.tokens, do_sample=args.sample,
               streamer=on_step, rng=rng)
    gen_elapsed = time.perf_counter() - gen_start
    print()

    content = out[0]["generated_text"][0]["content"]
    n = len(step_times)
    print(f"\n--- Final ---\n{content}")
    print(f"\nGenerated {n} tokens in {gen_elapsed:.2f}s"
          + (f" ({n / gen_elapsed:.1f} tok/s)" if gen_elapsed > 0 else ""))
    if step_times:
        print(f"  Step: first {step_times[0]:.1f}ms, "
              f"avg {np.mean(step_times):.1f}ms, last {step_times[-1]:.1f}ms")

    pipe.close()


if __name__ == "__main__":
    main()
