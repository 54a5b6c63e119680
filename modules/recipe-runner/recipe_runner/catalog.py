"""Recipe discovery by id or path."""

import logging
from pathlib import Path

import yaml

from .errors import RecipeDefinitionError
from .models import Recipe
from .models import load_recipe

logger = logging.getLogger(__name__)

RECIPE_SUFFIXES = (".yaml", ".yml")


class RecipeCatalog:
    """Recipes stored as YAML files under one directory tree."""

    def __init__(self, recipes_dir: Path):
        self.recipes_dir = Path(recipes_dir)

    def files(self) -> list[Path]:
        if not self.recipes_dir.is_dir():
            return []
        return sorted(p for p in self.recipes_dir.rglob("*") if p.suffix in RECIPE_SUFFIXES and p.is_file())

    def list(self) -> list[Recipe]:
        """All loadable recipes sorted by id; invalid files are logged and skipped."""
        recipes = []
        for path in self.files():
            try:
                recipes.append(load_recipe(path))
            except (RecipeDefinitionError, OSError) as e:
                logger.warning("Skipping %s: %s", path, e)
        return sorted(recipes, key=lambda r: r.id)

    def get(self, recipe_id: str) -> Recipe:
        """Find a recipe by its id field (or, failing that, its file stem).

        Raises:
            RecipeDefinitionError: no such recipe, or the file is invalid
        """
        stem_match = None
        for path in self.files():
            if path.stem == recipe_id:
                stem_match = path
            try:
                recipe = Recipe.from_yaml(path)
            except (ValueError, TypeError, OSError, yaml.YAMLError) as e:
                # Reported in full if this file is the one requested
                logger.debug("Unreadable recipe file %s: %s", path, e)
                continue
            if recipe.id == recipe_id:
                return load_recipe(path)
        if stem_match is not None:
            return load_recipe(stem_match)
        raise RecipeDefinitionError(f"Recipe not found: {recipe_id} (searched {self.recipes_dir})")

    def resolve(self, ref: str) -> Recipe:
        """Accept either a recipe id or a path to a recipe YAML file."""
        path = Path(ref)
        if path.suffix in RECIPE_SUFFIXES or path.is_file():
            if not path.is_file():
                raise RecipeDefinitionError(f"Recipe file not found: {path}")
            return load_recipe(path)
        return self.get(ref)
