"""Parameter sets for tile and layer alignment.

Every stage compares its parameters by value: the feature cache is validated
with :class:`FeatureParameters` and the correspondence cache with
:class:`MatchFingerprint`. Both are frozen pydantic models, so equality is
field-wise and they can be stored next to cached results.
"""
import enum
import os
from multiprocessing import cpu_count
from typing import Annotated, Optional

from pydantic import AfterValidator, BaseModel, Field

from .alignment._models import ModelType


def valid_model_index(index: int) -> int:
    """Pydantic validator rejecting unknown model indices."""
    ModelType.from_index(index)
    return index


def input_path_exists(path: str) -> str:
    """Pydantic validator to check the path exists."""
    if not os.path.exists(path):
        raise ValueError(f"Input folder does not exist: {path}")

    return path


ModelIndex = Annotated[int, AfterValidator(valid_model_index)]


class JsonFileModel(BaseModel):
    @classmethod
    def from_json_file(cls, json_path: str):
        """Create parameters from a JSON file.

        Args:
            json_path: Path to JSON file containing parameters
        """
        with open(json_path) as f:
            return cls.model_validate_json(f.read())

    def to_json_file(self, json_path: str) -> None:
        """Save parameters to a JSON file.

        Args:
            json_path: Path where JSON file should be saved
        """
        with open(json_path, "w") as f:
            f.write(self.model_dump_json(indent=2))


class FeatureParameters(JsonFileModel, use_attribute_docstrings=True, frozen=True):
    """Scale-invariant feature extraction settings."""

    fd_size: int = Field(default=8, ge=1)
    """Width of the descriptor grid, in histograms per side."""

    fd_bins: int = Field(default=8, ge=1)
    """Orientation bins per descriptor histogram."""

    min_octave_size: int = Field(default=64, ge=8)
    """Smallest image side length for which an octave is still computed."""

    max_octave_size: int = Field(default=600, ge=8)
    """Images are downscaled until their larger side fits into this size."""

    steps: int = Field(default=3, ge=1)
    """Scale steps per octave."""

    initial_sigma: float = Field(default=1.6, gt=0)
    """Gaussian blur of the first octave."""


class MatchFingerprint(JsonFileModel, use_attribute_docstrings=True, frozen=True):
    """Everything that decides which correspondences a tile pair produces."""

    features: FeatureParameters = FeatureParameters()
    """Feature extraction settings."""

    rod: float = Field(default=0.92, gt=0, le=1)
    """Closest/next-closest descriptor distance ratio a match must stay below."""

    max_epsilon: float = Field(default=100.0, gt=0)
    """Maximal alignment error of an inlier, in pixels."""

    min_inlier_ratio: float = Field(default=0.2, ge=0, le=1)
    """Minimal ratio of inliers to candidates."""

    min_num_inliers: int = Field(default=7, ge=0)
    """Minimal number of inliers."""

    expected_model_index: ModelIndex = 1
    """Model fitted to the candidates (0 translation, 1 rigid, 2 similarity, 3 affine, 4 homography)."""

    reject_identity: bool = False
    """Discard consensus sets that are explained by the identity transform."""

    identity_tolerance: float = Field(default=0.5, ge=0)
    """Maximal displacement, in pixels, still considered identity."""

    max_trials: int = Field(default=1000, ge=1)
    """Number of RANSAC hypotheses drawn per consensus search."""


class AlignParameters(MatchFingerprint, use_attribute_docstrings=True, frozen=False):
    """Matching parameters plus the model used for global relaxation."""

    desired_model_index: ModelIndex = 1
    """Model of each tile during global optimization."""

    correspondence_weight: float = Field(default=1.0, gt=0)
    """Weight assigned to every accepted correspondence."""

    regularize: bool = False
    """Blend the desired model with the regularizer model."""

    regularizer_model_index: ModelIndex = 1
    """Model blended into the desired model when regularizing."""

    lambda_: float = Field(default=0.1, ge=0, le=1)
    """Weight of the regularizer model."""

    def fingerprint(self) -> MatchFingerprint:
        """The subset of fields that validates cached correspondences."""
        return MatchFingerprint.model_validate(
            self.model_dump(include=set(MatchFingerprint.model_fields))
        )


class OptimizeParameters(AlignParameters, use_attribute_docstrings=True):
    """Rigid montage alignment parameters."""

    max_iterations: int = Field(default=2000, ge=1)
    """Iteration budget of the global optimizer."""

    max_plateau_width: int = Field(default=200, ge=1)
    """Iterations without improvement after which the optimizer stops."""

    filter_outliers: bool = False
    """Drop correspondences far above the mean residual and re-optimize."""

    mean_factor: float = Field(default=3.0, gt=0)
    """Standard deviations above the mean residual at which a correspondence is an outlier."""


class ElasticParameters(AlignParameters, use_attribute_docstrings=True):
    """Elastic layer alignment parameters."""

    features: FeatureParameters = FeatureParameters(max_octave_size=1600)
    """Feature extraction settings for the coarse layer matching."""

    max_epsilon: float = Field(default=200.0, gt=0)
    """Maximal alignment error of an inlier, in full resolution pixels."""

    min_inlier_ratio: float = Field(default=0.0, ge=0, le=1)
    """Minimal ratio of inliers to candidates."""

    min_num_inliers: int = Field(default=12, ge=0)
    """Minimal number of inliers."""

    identity_tolerance: float = Field(default=5.0, ge=0)
    """Maximal displacement, in full resolution pixels, still considered identity."""

    is_aligned: bool = False
    """Layers are roughly aligned already; skip the coarse layer matching."""

    max_num_neighbors: int = Field(default=1, ge=1)
    """How many following layers each layer is matched against."""

    max_num_failures: int = Field(default=3, ge=0)
    """Consecutive failed pairs after which the neighbor search of a layer gives up."""

    max_num_threads_sift: int = Field(default_factory=cpu_count, ge=1)
    """Concurrent feature extraction tasks."""

    max_num_threads: int = Field(default_factory=cpu_count, ge=1)
    """Concurrent layer matching tasks."""

    max_iterations_optimize: int = Field(default=1000, ge=1)
    """Iteration budget of the rigid pre-alignment."""

    max_plateau_width_optimize: int = Field(default=200, ge=1)
    """Plateau width of the rigid pre-alignment."""

    layer_scale: float = Field(default=0.1, gt=0, le=1)
    """Scale at which block matching and mesh relaxation run."""

    search_radius: int = Field(default=200, ge=1)
    """Block matching search radius, in full resolution pixels."""

    block_radius: int = -1
    """Block radius in full resolution pixels; -1 derives it from the mesh resolution."""

    min_r: float = Field(default=0.6, ge=-1, le=1)
    """Minimal correlation coefficient of a block match."""

    max_curvature_r: float = Field(default=10.0, gt=0)
    """Maximal principal curvature ratio at the correlation peak."""

    rod_r: float = Field(default=0.9, gt=0, le=1)
    """Maximal ratio of second best to best correlation peak."""

    use_local_smoothness_filter: bool = True
    """Reject displacements inconsistent with their neighborhood."""

    local_model_index: ModelIndex = 1
    """Model of the local smoothness filter."""

    local_region_sigma: float = Field(default=200.0, gt=0)
    """Gaussian neighborhood of the local smoothness filter, in full resolution pixels."""

    max_local_epsilon: float = Field(default=100.0, gt=0)
    """Maximal local residual, in full resolution pixels."""

    max_local_trust: float = Field(default=3.0, gt=0)
    """Maximal ratio of a residual to the neighborhood's mean residual."""

    resolution_spring_mesh: int = Field(default=16, ge=2)
    """Vertices per row of each spring mesh."""

    stiffness_spring_mesh: float = Field(default=0.1, gt=0)
    """Spring constant of the springs inside a mesh."""

    damp_spring_mesh: float = Field(default=0.6, gt=0, le=1)
    """Velocity damping of the mesh relaxation."""

    max_stretch_spring_mesh: float = Field(default=2000.0, gt=0)
    """Maximal spring stretch, in full resolution pixels."""

    max_iterations_spring_mesh: int = Field(default=1000, ge=1)
    """Iteration budget of the mesh relaxation."""

    max_plateau_width_spring_mesh: int = Field(default=200, ge=1)
    """Plateau width of the mesh relaxation."""

    clear_cache: bool = False
    """Ignore and overwrite cached features and correspondences."""


class AlignmentMode(enum.Enum):
    montage = "montage"
    elastic = "elastic"
    linear = "linear"


class AlignmentJobParameters(JsonFileModel, use_attribute_docstrings=True):
    """A command line alignment run over a folder of images."""

    input_folder: Annotated[str, AfterValidator(input_path_exists)]
    """Folder with the images to align.

    In montage mode it must contain a ``coordinates.csv`` with the columns
    ``filename``, ``x`` and ``y`` giving each tile's approximate position.
    In elastic and linear mode every image is one layer, ordered by file name.
    """

    mode: AlignmentMode = AlignmentMode.elastic
    """Align tiles of one montage, or a stack of layers elastically or by chaining layer pairs."""

    output_folder: Optional[str] = None
    """Where transforms are written; defaults to ``<input_folder>_aligned``."""

    cache_folder: Optional[str] = None
    """Folder of the feature and correspondence cache; no disk cache if unset."""

    fixed: list[int] = [0]
    """Indices of the tiles or layers that stay in place."""

    montage: OptimizeParameters = OptimizeParameters()
    """Montage alignment parameters."""

    elastic: ElasticParameters = ElasticParameters()
    """Elastic alignment parameters."""

    linear: AlignParameters = AlignParameters(features=FeatureParameters(max_octave_size=1600))
    """Parameters of the layer-by-layer linear alignment."""

    show_progress: bool = True
    """Show progress bars."""

    verbose: bool = False
    """Show debug-level logging."""

    @property
    def resolved_output_folder(self) -> str:
        return self.output_folder or self.input_folder.rstrip("/\\") + "_aligned"
