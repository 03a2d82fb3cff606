"""Turns cooking requests into recipes you can search.

Why is this hard?

- Creating a recipe is a call to a large language model behind an api. It can be
  slow, it can fail, and it can answer with something that is not a recipe.
- Search is tied to embeddings, which is another api call.
- Macros and the embedding are derived from the ingredients. Change the
  ingredients and both have to change with them, in one write.
- Batches of prompts should not fall over because one prompt did.

The external services are faked in the tests. The orchestration lives in
`alchemorsel.pipeline` and is handed its collaborators, it does not build them.
"""
