# fleetci_workflow.py
# The project's CI: five independent jobs on every relevant push / PR.
from __future__ import annotations

from fleetci.dsl import (
    annotate,
    cache,
    checkout,
    job,
    on_pull_request,
    on_push,
    pipeline,
    setup,
    sh,
    step_failed,
    uses,
)

IGNORED_PATHS = ["**/*.md", "**/*.yml"]

FMT_HELP = """
Formatting check failed!
Please run this command before committing:
cargo fmt --all
"""


def install_protoc():
    return setup(
        "Install Protobuf Compiler",
        "sudo apt-get update\nsudo apt-get install -y protobuf-compiler",
    )


def rust(*components: str):
    return uses("setup-rust", "Setup Rust", components=list(components))


WARM = cache("warm", "target")


def workflow():
    return pipeline(
        "CI",
        job(
            "check",
            checkout(),
            install_protoc(),
            rust(),
            sh("cargo check", "cargo check"),
            display_name="Check",
            cache=WARM,
        ),
        job(
            "typos",
            checkout(),
            uses("typos", "Spell Check", files="."),
            display_name="Spell Check",
        ),
        job(
            "test",
            checkout(),
            install_protoc(),
            rust(),
            sh("cargo test", "cargo test"),
            sh("cargo test --all-features", "cargo test --all-features"),
            display_name="Test",
            cache=WARM,
        ),
        job(
            "clippy-check",
            checkout(),
            install_protoc(),
            rust("clippy"),
            uses("install-tool", "Install cargo-hack", tool="cargo-hack"),
            sh("hack all features", "cargo hack check --all-features --locked"),
            sh("hack no default features", "cargo hack check --no-default-features --locked"),
            sh("hack each feature", "cargo hack check --each-feature --no-dev-deps"),
            display_name="Clippy Check",
            cache=WARM,
        ),
        job(
            "format",
            checkout(),
            rust("rustfmt"),
            # --check: exit non-zero on unformatted code; plain `cargo fmt --all` rewrites and passes
            sh("cargo fmt", "cargo fmt --all -- --check", id="fmt", continue_on_error=True),
            annotate(FMT_HELP, when=step_failed("fmt")),
            display_name="Format",
            cache=WARM,
        ),
        manual=True,
        pull_request=on_pull_request(
            types=["opened", "synchronize"],
            paths_ignore=IGNORED_PATHS + ["!.github/workflows/check.yml"],
        ),
        push=on_push(
            branches=["*"],
            paths_ignore=IGNORED_PATHS + ["!.github/workflows/ci.yml"],
        ),
        env={"CARGO_INCREMENTAL": 0},
        protected_ref="main",
        cancel_in_progress=True,
    )
