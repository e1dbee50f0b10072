# node_app_workflow.py
# Same pipeline as smokeci.yaml, written with the Python DSL.
from __future__ import annotations
from smokeci.dsl import pipeline, chain, step, sh


def workflow():
    return pipeline(
        "node-app-smoke",
        *chain(
            step("build", "docker build -t app .", timeout=600),
            step("run", "docker run -d -p 3000:3000 --name app app", timeout=60),
            sh("test", "sleep 5 && wget -qO- http://localhost:3000", timeout=30, retries=2),
        ),
        # cleanup runs even when the probe failed
        step("cleanup", "docker rm -f app", needs=["test"], always_run=True, timeout=60),
    )
