from pathlib import Path
import subprocess
import sys

from discovery.constants import EMBEDDING_LOCAL_MODEL_DIR, EMBEDDING_LOCAL_MODEL_ID


def setup(model_dir: Path = Path(EMBEDDING_LOCAL_MODEL_DIR)) -> None:
    """Export the local fallback embedding model to ONNX for in-process use."""
    if (model_dir / "model.onnx").exists():
        print("Model already exists.")
        return

    print("Setting up local fallback model (requires internet and ~100MB space)...")
    model_id = f"sentence-transformers/{EMBEDDING_LOCAL_MODEL_ID}"

    # optimum does the ONNX export; only needed once, so it is not a runtime dependency.
    try:
        import importlib.util
        if importlib.util.find_spec("optimum") is None:
            raise ImportError
    except ImportError:
        print("Installing optimum...")
        subprocess.check_call([sys.executable, "-m", "pip", "install", "optimum[onnxruntime]"])

    print(f"Exporting {model_id} to ONNX...")
    subprocess.check_call([
        "optimum-cli", "export", "onnx",
        "--model", model_id,
        "--task", "feature-extraction",
        str(model_dir),
    ])
    print("Setup complete.")


if __name__ == "__main__":
    setup()
