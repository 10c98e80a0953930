"""
Tools for paired-end amplicon processing with DADA2 and downstream
community analysis.
"""

from .logger import setup_logger, log_print
from .amplicon_utils import (
    load_config,
    parse_sample_name,
    discover_samples,
    load_primer_metadata,
    resolve_primer_lengths,
    build_read_track,
    find_read_track_violations,
    export_biom_format,
    PrimerLengthError,
    ReadTrackError,
)
from .amplicon_reads import (
    count_reads,
    quality_profile,
    suggest_truncation_length,
    filter_read,
    filter_and_trim,
)
from .amplicon_dada2 import (
    Dada2Backend,
    DenoisingResult,
    run_dada2_workflow,
    assign_taxonomy_table,
    sequence_length_distribution,
)
from .amplicon_experiment import AmpliconExperiment, ExperimentError
from .amplicon_diversity import (
    calculate_alpha_diversity,
    calculate_beta_diversity,
    ordinate,
    perform_permanova,
)
from .amplicon_stats import (
    calculate_family_ratios,
    compare_conditions,
    differential_abundance_analysis,
)

__version__ = '0.1.0'
