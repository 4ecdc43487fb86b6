from typing import Dict

ERROR_CODE_MAP: Dict[str, Dict[str, str]] = {
    "DEPENDENCY_LOAD_TIMEOUT": {
        "message": "Render dependency load timed out",
        "hint": "The engine module took too long to load. Retry, or raise VIZ_DEPENDENCY_TIMEOUT_SECONDS.",
    },
    "DEPENDENCY_LOAD_FAILED": {
        "message": "Render dependency unavailable",
        "hint": "Install the optional engines extra (py3Dmol, rdkit) and retry.",
    },
    "INVALID_IDENTIFIER": {
        "message": "Invalid molecule identifier",
        "hint": "Check the identifier against its kind (SMILES, InChI, CID, InChIKey, PDB accession).",
    },
    "REMOTE_FETCH_ERROR": {
        "message": "Structure repository request failed",
        "hint": "The repository rejected the lookup; confirm the accession exists or retry later.",
    },
    "PAYLOAD_RESOLUTION_FAILED": {
        "message": "Structure data could not be resolved",
        "hint": "Check network access to the structure repositories, then retry.",
    },
    "RENDER_FAILED": {
        "message": "Rendering failed",
        "hint": "The engine rejected the structure or style; retry or simplify the style options.",
    },
    "UNEXPECTED_ERROR": {
        "message": "Unexpected error",
        "hint": "See the service logs for details.",
    },
}


def explain_error(code: str | None) -> Dict[str, str] | None:
    if not code:
        return None
    return ERROR_CODE_MAP.get(code)
