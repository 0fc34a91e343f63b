"""
Model package (.mdl) save / load

The package is a zip with:
    model.json          Keras model config (head.to_json())
    model.weights.h5    Keras weights file (head.save_weights())
    model_labels.json   class index -> label name
    transfer_model.json feature extractor info (name, lastLayer, url)

Only the trained head is stored; the feature extractor is rebuilt from
transfer_model.json when the package is loaded.
"""
import io
import json
import os
import tempfile
import zipfile
from typing import Dict, NamedTuple, Optional

from tensorflow import keras

from config import config
from errors import ArtifactError


class LoadedArtifact(NamedTuple):
    model: keras.Model
    label_names: Dict[str, str]
    extractor_info: Optional[Dict]


def save_artifact(head: keras.Model, label_names: Dict[str, str], extractor_info: Dict, target=None):
    """
    Write the package to `target` (path or binary file object).
    With no target the zip is returned as bytes.
    """
    names = config.STORAGE

    # Keras only writes weights to a file path
    with tempfile.TemporaryDirectory() as tmpdir:
        weights_path = os.path.join(tmpdir, names['weights_file'])
        head.save_weights(weights_path)
        with open(weights_path, 'rb') as f:
            weight_data = f.read()

    out = io.BytesIO() if target is None else target
    try:
        with zipfile.ZipFile(out, 'w', zipfile.ZIP_DEFLATED) as zf:
            zf.writestr(names['topology_file'], head.to_json())
            zf.writestr(names['weights_file'], weight_data)
            zf.writestr(names['labels_file'], json.dumps(label_names))
            zf.writestr(names['extractor_file'], json.dumps(extractor_info))
    except OSError as e:
        raise ArtifactError(f"Failed to write model package: {e}") from e

    print(f"✅ Model package written ({len(weight_data) / 1024:.1f} KB of weights, "
          f"{len(head.weights)} tensors)")

    if target is None:
        return out.getvalue()
    return target


def load_artifact(source) -> LoadedArtifact:
    """Read a package from a path, bytes, or binary file object"""
    names = config.STORAGE
    if isinstance(source, (bytes, bytearray)):
        source = io.BytesIO(source)

    try:
        with zipfile.ZipFile(source) as zf:
            members = set(zf.namelist())
            for required in (names['topology_file'], names['weights_file'], names['labels_file']):
                if required not in members:
                    raise ArtifactError(f"Model package is missing {required}")

            topology = zf.read(names['topology_file']).decode('utf-8')
            weight_data = zf.read(names['weights_file'])
            label_names = json.loads(zf.read(names['labels_file']))
            extractor_info = None
            if names['extractor_file'] in members:
                extractor_info = json.loads(zf.read(names['extractor_file']))
    except zipfile.BadZipFile as e:
        raise ArtifactError(f"Not a model package: {e}") from e
    except (KeyError, ValueError) as e:
        raise ArtifactError(f"Corrupt model package: {e}") from e

    if not isinstance(label_names, dict):
        raise ArtifactError(f"Malformed {names['labels_file']}: expected an object")

    try:
        model = keras.models.model_from_json(topology)
        with tempfile.TemporaryDirectory() as tmpdir:
            weights_path = os.path.join(tmpdir, names['weights_file'])
            with open(weights_path, 'wb') as f:
                f.write(weight_data)
            model.load_weights(weights_path)
    except Exception as e:
        raise ArtifactError(f"Could not rebuild model from package: {e}") from e

    print(f"✅ Model package loaded: {len(model.layers)} layers, {len(label_names)} labels")

    return LoadedArtifact(model, {str(k): v for k, v in label_names.items()}, extractor_info)
