"""
Version information for the Connectivity-Symptom Biotype Analysis.
"""

# Main project version
__version__ = "1.0.0"

# Component versions
CORE_VERSION = "1.0.0"        # Screen, CCA, projection
VALIDATION_VERSION = "1.0.0"  # Permutation, cross-validation, jackknife
CLUSTERING_VERSION = "1.0.0"  # Ward clustering and Gaussian null

# Version history
VERSION_HISTORY = {
    "1.0.0": {
        "date": "2026-10-18",
        "description": "Initial release",
        "changes": [
            "Spearman feature screen with inclusive threshold ties",
            "QR/SVD canonical correlation with Wilks' Lambda tests",
            "Site-blocked permutation testing with per-iteration seeds",
            "Site-stratified cross-validation and leave-one-out jackknife",
            "Ward clustering of canonical scores with a Gaussian null",
        ]
    }
}


def get_version_info() -> str:
    """
    Get formatted version information string.

    Returns:
        Formatted string with version and component information
    """
    info = [
        f"Biotypes Analysis v{__version__}",
        "",
        "Component Versions:",
        f"  - Core: v{CORE_VERSION}",
        f"  - Validation: v{VALIDATION_VERSION}",
        f"  - Clustering: v{CLUSTERING_VERSION}",
    ]
    return "\n".join(info)


if __name__ == "__main__":
    print(get_version_info())
