# bindings_workflow.py
# Node.js bindings release pipeline: integration on every trigger, a
# four-platform native build on release tags, then a single npm publish.
from __future__ import annotations

from releaseci.conditions import on_tag
from releaseci.dsl import job, matrix, sh, triggers
from releaseci.dsl import workflow as wf

NODEJS = "bindings/nodejs"

PLATFORMS = [
    {"os": "linux", "arch": "x64", "target": "x86_64-unknown-linux-gnu", "runner": "ubuntu-20.04"},
    {"os": "windows", "arch": "x64", "target": "x86_64-pc-windows-msvc", "runner": "windows-2019"},
    {"os": "macos", "arch": "x64", "target": "x86_64-apple-darwin", "runner": "macos-11"},
    {"os": "macos", "arch": "arm64", "target": "aarch64-apple-darwin", "runner": "macos-11"},
]

BUILD_NATIVE = """\
if [ "$MATRIX_TARGET" = "aarch64-apple-darwin" ]; then
  export CC=$(xcrun -f clang)
  export CXX=$(xcrun -f clang++)
  SYSROOT=$(xcrun --sdk macosx --show-sdk-path)
  export CFLAGS="-isysroot $SYSROOT -isystem $SYSROOT"
fi
export NAPI_TARGET=$MATRIX_TARGET
yarn build
"""


def workflow():
    return wf(
        "bindings-nodejs",
        job(
            "integration",
            sh("Corepack", "corepack enable"),
            sh("Install dependencies", "yarn install --immutable"),
            sh("Check format", "yarn run prettier --check ."),
            sh("Build", "yarn build:debug"),
            sh("Check diff", "git diff --exit-code", cwd="."),
            sh("Test", "make -C tests test-bindings-nodejs", cwd="."),
            cwd=NODEJS,
        ),
        job(
            "build",
            sh("Corepack", "corepack enable"),
            sh("Install dependencies", "yarn install --immutable"),
            sh("Build", BUILD_NATIVE),
            sh("Strip for macos", "strip -x *.node", when=lambda m: m["os"] == "macos"),
            needs=["integration"],
            condition=on_tag(),
            matrix=matrix(include=PLATFORMS),
            display_name="build-{os}-{arch}",
            cwd=NODEJS,
            upload=[f"{NODEJS}/*.node"],
            artifact="bindings-nodejs",
            artifact_tag="{target}",
        ),
        job(
            "publish",
            sh("Corepack", "corepack enable"),
            sh("Install dependencies", "yarn install --immutable"),
            sh("Move artifacts", 'mkdir -p artifacts && cp -R "$RELEASECI_ARTIFACTS_DIR"/. artifacts/ && yarn run napi artifacts'),
            sh("Add LICENSE", f"cp LICENSE ./{NODEJS}", cwd="."),
            sh(
                "Publish",
                'echo "//registry.npmjs.org/:_authToken=$NPM_TOKEN" >> ~/.npmrc && npm publish --access public --provenance',
            ),
            needs=["build"],
            cwd=NODEJS,
            consumes=["bindings-nodejs"],
            publish=True,
            secrets=["NPM_TOKEN"],
            environment="npmjs.com",
        ),
        on=triggers(
            paths=[f"{NODEJS}/**", ".github/workflows/bindings.nodejs.yml"],
        ),
    )
