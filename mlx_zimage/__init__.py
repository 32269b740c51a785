# Copyright © 2023-2024 Apple Inc.

import os

from ._version import __version__

os.environ["TRANSFORMERS_NO_ADVISORY_WARNINGS"] = "1"

from .denoise import apply_guidance, run_denoising
from .generate import PromptEnhanceConfig, enhance_prompt, generate
from .pipeline import GenerationRequest, ZImagePipeline
from .sample_utils import GenerationConfig, sample_token
from .scheduler import FlowMatchEulerScheduler, SchedulerConfig, calculate_shift
from .weights import audit_weights, load_module_weights
