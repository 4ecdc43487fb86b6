from __future__ import annotations

import abc
import asyncio
import importlib
from typing import Any, Dict, Optional

from visualize.failures import DependencyLoadFailed
from visualize.models import IdentifierKind, SurfaceKind


class Viewer(abc.ABC):
    """Narrow drawing capability set the render executor relies on."""

    @abc.abstractmethod
    def load_model(self, data: str, fmt: str) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def apply_style(self, selection: Dict[str, Any], style: Dict[str, Any]) -> None:
        """Replace the style of every atom matched by ``selection``."""
        raise NotImplementedError

    @abc.abstractmethod
    def add_surface(self, kind: SurfaceKind, opacity: float, color: Dict[str, Any]) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def add_labels(self, residue_level: bool) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def fit_view(self) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def flush(self) -> None:
        raise NotImplementedError


class RenderEngine(abc.ABC):
    @abc.abstractmethod
    def create_viewer(self, width: int, height: int, background_color: str) -> Viewer:
        raise NotImplementedError


class ConversionToolkit(abc.ABC):
    @abc.abstractmethod
    def parse(self, kind: IdentifierKind, text: str) -> Optional[Any]:
        """Return a toolkit-owned molecule handle, or None when ``text`` is invalid."""
        raise NotImplementedError

    @abc.abstractmethod
    def to_molblock(self, mol: Any, embed_3d: bool) -> str:
        raise NotImplementedError

    @abc.abstractmethod
    def release(self, mol: Any) -> None:
        raise NotImplementedError


# 3Dmol.js SurfaceType values.
_SURFACE_TYPES = {SurfaceKind.VDW: "VDW", SurfaceKind.MS: "MS", SurfaceKind.SAS: "SAS"}
_SURFACE_FALLBACK = {"VDW": 1, "MS": 2, "SAS": 3}


class Py3DmolViewer(Viewer):
    def __init__(self, module: Any, view: Any) -> None:
        self._module = module
        self.view = view

    def load_model(self, data: str, fmt: str) -> None:
        self.view.addModel(data, fmt)

    def apply_style(self, selection: Dict[str, Any], style: Dict[str, Any]) -> None:
        self.view.setStyle(selection, style)

    def add_surface(self, kind: SurfaceKind, opacity: float, color: Dict[str, Any]) -> None:
        name = _SURFACE_TYPES.get(kind, "VDW")
        surface_type = getattr(self._module, name, _SURFACE_FALLBACK[name])
        self.view.addSurface(surface_type, {"opacity": opacity, **color})

    def add_labels(self, residue_level: bool) -> None:
        if residue_level:
            self.view.addResLabels({}, {"fontSize": 12, "showBackground": False})
        else:
            self.view.addPropertyLabels("elem", {}, {"fontSize": 10, "showBackground": False})

    def fit_view(self) -> None:
        self.view.zoomTo()

    def flush(self) -> None:
        self.view.render()

    def to_html(self) -> str:
        # Without a target file write_html returns the embeddable markup.
        return str(self.view.write_html())


class Py3DmolEngine(RenderEngine):
    def __init__(self, module: Any) -> None:
        self.module = module

    def create_viewer(self, width: int, height: int, background_color: str) -> Viewer:
        view = self.module.view(width=width, height=height)
        view.setBackgroundColor(background_color)
        return Py3DmolViewer(self.module, view)


class RDKitToolkit(ConversionToolkit):
    def __init__(self, chem: Any, all_chem: Any, seed: int = 0xF00D) -> None:
        self.chem = chem
        self.all_chem = all_chem
        self.seed = seed

    def parse(self, kind: IdentifierKind, text: str) -> Optional[Any]:
        if kind == IdentifierKind.INCHI:
            return self.chem.MolFromInchi(text)
        return self.chem.MolFromSmiles(text)

    def to_molblock(self, mol: Any, embed_3d: bool) -> str:
        if not embed_3d:
            return self.chem.MolToMolBlock(mol)
        hydrogenated = self.chem.AddHs(mol)
        try:
            if self.all_chem.EmbedMolecule(hydrogenated, randomSeed=self.seed) != 0:
                return self.chem.MolToMolBlock(mol)
            self.all_chem.MMFFOptimizeMolecule(hydrogenated)
            return self.chem.MolToMolBlock(hydrogenated)
        finally:
            self.release(hydrogenated)

    def release(self, mol: Any) -> None:
        # RDKit molecules are refcounted C++ objects; dropping conformers frees the bulk eagerly.
        remover = getattr(mol, "RemoveAllConformers", None)
        if callable(remover):
            remover()


async def _import(module_name: str) -> Any:
    return await asyncio.to_thread(importlib.import_module, module_name)


def _require_symbol(dependency: str, module: Any, symbol: str) -> None:
    if not callable(getattr(module, symbol, None)):
        raise DependencyLoadFailed(dependency, f"{symbol} not available after import")


async def load_py3dmol_engine() -> Py3DmolEngine:
    module = await _import("py3Dmol")
    _require_symbol("py3Dmol", module, "view")
    return Py3DmolEngine(module)


async def load_rdkit_toolkit() -> RDKitToolkit:
    chem = await _import("rdkit.Chem")
    all_chem = await _import("rdkit.Chem.AllChem")
    _require_symbol("rdkit", chem, "MolFromSmiles")
    _require_symbol("rdkit", all_chem, "EmbedMolecule")
    return RDKitToolkit(chem, all_chem)
