# Note: these are file and directory names relative to the invocation
# directory (the workspace root), not absolute paths.
MERGED_INFO_FILENAME = "coverage.info"
FINAL_INFO_FILENAME = "final.info"
INFO_SUFFIX = ".info"

INSTRUMENTED_BUILD_DIRNAME = "target/instrumented"
REPORT_DIRNAME = "target/coverage"

UNIT_TARGET_NAME = "unit"
INTEGRATION_TARGET_NAME = "integration"

# Lines that are nothing but an assertion. An assertion's "uncovered" branch
# is the failure path, which passing tests never take.
DEFAULT_ASSERT_EXCLUSION_PATTERN = r"^\s*(debug_)?assert(_eq|_ne)?!"

# File name patterns for compiler byproducts within the instrumented build dir.
DEPENDENCY_METADATA_GLOB = "*.d"
COUNTER_FILE_GLOB = "*.gcda"


def info_filename(target_name: str) -> str:
    return target_name + INFO_SUFFIX


# The only coverage records cleanup may delete; other `.info` files in the
# workspace root belong to the user.
PIPELINE_RECORD_FILENAMES = (
    info_filename(UNIT_TARGET_NAME),
    info_filename(INTEGRATION_TARGET_NAME),
    MERGED_INFO_FILENAME,
    FINAL_INFO_FILENAME,
)
