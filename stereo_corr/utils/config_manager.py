"""
Configuration Management System

Handles loading, validation, and management of correlation parameters. The
YAML document is turned into an immutable CorrelationSettings value which is
handed to every pipeline component.
"""

import dataclasses
import yaml
from dataclasses import dataclass
from typing import Dict, Any, Optional, Tuple
from pathlib import Path

from ..data_models import BBox, CostMode, OutlierMode, PrefilterMode, SearchRange
from ..errors import ConfigurationError


@dataclass(frozen=True)
class CorrelationSettings:
    """Immutable set of recognized correlation tunables."""
    seed_mode: int = 1
    cost_mode: CostMode = CostMode.CROSS_CORRELATION
    use_sgm: bool = False
    sgm_p1: float = 1.0  # in units of the per-pixel matching cost
    sgm_p2: float = 4.0
    kernel_size: Tuple[int, int] = (21, 21)  # (width, height)
    max_pyramid_levels: int = 5
    correlation_timeout: float = 0.0  # seconds, 0 = unbounded
    xcorr_threshold: float = 2.0  # negative disables the left-right check
    prefilter_mode: PrefilterMode = PrefilterMode.LOG
    prefilter_sigma: float = 1.4
    seed_percent_pad: float = 0.25
    search_range: Optional[SearchRange] = None
    outlier_mode: OutlierMode = OutlierMode.AUTO
    rm_threshold: float = 3.0
    rm_min_matches: float = 60.0  # percent
    rm_half_kernel: Tuple[int, int] = (1, 1)
    rm_threshold_scale: float = 2.0 / 3.0
    rm_min_matches_scale: float = 0.5 / 0.6
    rm_quantile_percentile: float = 0.85
    rm_quantile_multiple: float = -1.0
    rm_quantile_min_deviation: float = 1.0
    blob_filter_area: int = 0
    collar_size: int = 512
    tile_size: int = 1024
    threads: int = 4
    use_local_homography: bool = False
    homography_min_points: int = 20
    homography_ransac_threshold: float = 1.0
    active_processing_window: Optional[BBox] = None
    left_image_crop_win: Optional[BBox] = None
    right_image_crop_win: Optional[BBox] = None
    skip_low_res: bool = False
    compute_low_res_only: bool = False
    low_res_max_pixels: int = 2250000
    ternary_census_threshold: float = 0.01

    def __post_init__(self):
        set_ = lambda name, value: object.__setattr__(self, name, value)

        set_('cost_mode', CostMode.parse(self.cost_mode))
        set_('prefilter_mode', PrefilterMode.parse(self.prefilter_mode))
        try:
            set_('outlier_mode', OutlierMode(self.outlier_mode))
        except ValueError:
            raise ConfigurationError(f"Unknown outlier mode: {self.outlier_mode!r}")

        if self.cost_mode == CostMode.CENSUS_TRANSFORM and not self.use_sgm:
            raise ConfigurationError("Cannot use census transform without SGM")
        if self.cost_mode == CostMode.TERNARY_CENSUS_TRANSFORM and not self.use_sgm:
            raise ConfigurationError("Cannot use ternary census transform without SGM")

        if self.seed_mode not in (0, 1, 2, 3):
            raise ConfigurationError(f"seed_mode must be 0, 1, 2 or 3, got {self.seed_mode}")

        kernel = tuple(int(k) for k in self.kernel_size)
        if len(kernel) != 2 or any(k < 1 or k % 2 == 0 for k in kernel):
            raise ConfigurationError(f"kernel_size must be two odd positive integers, got {self.kernel_size}")
        set_('kernel_size', kernel)
        set_('rm_half_kernel', tuple(int(k) for k in self.rm_half_kernel))

        if self.search_range is not None and not isinstance(self.search_range, SearchRange):
            set_('search_range', SearchRange.from_list(self.search_range))
        for name in ('active_processing_window', 'left_image_crop_win', 'right_image_crop_win'):
            value = getattr(self, name)
            if value is not None and not isinstance(value, BBox):
                set_(name, BBox.from_list(value))

        if self.max_pyramid_levels < 0:
            raise ConfigurationError("max_pyramid_levels must be non-negative")
        if self.correlation_timeout < 0:
            raise ConfigurationError("correlation_timeout must be non-negative")
        if self.seed_percent_pad < 0:
            raise ConfigurationError("seed_percent_pad must be non-negative")
        if self.tile_size <= 0 or self.threads < 1:
            raise ConfigurationError("tile_size and threads must be positive")
        if not 0.0 < self.rm_quantile_percentile <= 1.0:
            raise ConfigurationError("rm_quantile_percentile must be in (0, 1]")
        if self.blob_filter_area < 0 or self.collar_size < 0:
            raise ConfigurationError("blob_filter_area and collar_size must be non-negative")
        if self.low_res_max_pixels <= 0:
            raise ConfigurationError("low_res_max_pixels must be positive")
        # resolving validates the quantile multiple when quantile filtering is selected
        self.resolved_outlier_mode

    @classmethod
    def from_dict(cls, params: Dict[str, Any]) -> "CorrelationSettings":
        known = {f.name for f in dataclasses.fields(cls)}
        unknown = sorted(set(params) - known)
        if unknown:
            raise ConfigurationError(f"Unrecognized correlation options: {', '.join(unknown)}")
        return cls(**params)

    @property
    def crop_left_and_right(self) -> bool:
        """True when both input crop windows are set, which disables checkpoint reuse."""
        return (self.left_image_crop_win is not None and not self.left_image_crop_win.empty and
                self.right_image_crop_win is not None and not self.right_image_crop_win.empty)

    @property
    def resolved_outlier_mode(self) -> OutlierMode:
        mode = self.outlier_mode
        if mode == OutlierMode.AUTO:
            quantile = self.rm_threshold <= 0 or self.rm_quantile_multiple > 0
            mode = OutlierMode.QUANTILE if quantile else OutlierMode.THRESHOLD
        if mode == OutlierMode.QUANTILE and self.rm_quantile_multiple <= 0:
            raise ConfigurationError("Quantile outlier removal needs a positive rm_quantile_multiple")
        return mode

    def replace(self, **changes) -> "CorrelationSettings":
        return dataclasses.replace(self, **changes)


class ConfigManager:
    """Manages configuration parameters for the correlation pipeline."""

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize configuration manager.

        Args:
            config_path: Path to configuration file. If None, uses default config.
        """
        self.config_path = config_path or self._get_default_config_path()
        self.config = self._load_config()
        self._validate_config()

    def _get_default_config_path(self) -> str:
        """Get path to default configuration file."""
        package_dir = Path(__file__).parent.parent
        return str(package_dir / "config" / "default_config.yaml")

    def _load_config(self) -> Dict[str, Any]:
        """Load configuration from YAML file."""
        try:
            with open(self.config_path, 'r') as file:
                config = yaml.safe_load(file)
            return config or {}
        except FileNotFoundError:
            raise FileNotFoundError(f"Configuration file not found: {self.config_path}")
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Error parsing configuration file: {e}")

    def _validate_config(self) -> None:
        """Validate configuration parameters for consistency and feasibility."""
        if not isinstance(self.config, dict):
            raise ConfigurationError("Configuration root must be a mapping")
        # Building the settings runs every correlation check
        self.get_correlation_settings()

        log = self.config.get('logging', {})
        level = str(log.get('level', 'INFO')).upper()
        if level not in ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'):
            raise ConfigurationError(f"Unknown logging level: {level}")

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get configuration value using dot notation.

        Args:
            key: Configuration key (e.g., 'correlation.kernel_size')
            default: Default value if key not found

        Returns:
            Configuration value
        """
        keys = key.split('.')
        value = self.config

        for k in keys:
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default

        return value

    def set(self, key: str, value: Any) -> None:
        """
        Set configuration value using dot notation.

        Args:
            key: Configuration key (e.g., 'correlation.seed_mode')
            value: Value to set
        """
        keys = key.split('.')
        config_ref = self.config

        for k in keys[:-1]:
            if k not in config_ref or config_ref[k] is None:
                config_ref[k] = {}
            config_ref = config_ref[k]

        config_ref[keys[-1]] = value
        self._validate_config()

    def save(self, output_path: Optional[str] = None) -> None:
        """
        Save current configuration to file.

        Args:
            output_path: Path to save configuration. If None, overwrites current file.
        """
        save_path = output_path or self.config_path

        with open(save_path, 'w') as file:
            yaml.dump(self.config, file, default_flow_style=False, indent=2)

    def get_correlation_params(self) -> Dict[str, Any]:
        """Get correlation parameters as a dictionary."""
        return dict(self.config.get('correlation') or {})

    def get_logging_params(self) -> Dict[str, Any]:
        """Get logging parameters as a dictionary."""
        return dict(self.config.get('logging') or {})

    def get_correlation_settings(self, **overrides) -> CorrelationSettings:
        """
        Build the immutable settings value for one run.

        Args:
            **overrides: Option values taking precedence over the file

        Returns:
            Validated CorrelationSettings
        """
        params = self.get_correlation_params()
        params.update({k: v for k, v in overrides.items() if v is not None})
        return CorrelationSettings.from_dict(params)
