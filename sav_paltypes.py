"""
Compiled type hints for Palworld world saves.

Map keys/values and set elements whose type is StructProperty carry no struct
name in the stream; these tables say what they are. Paths are written with a
leading "." the way the game tooling lists them; the registry normalizes.

Hint text forms: "StructProperty" (property-list struct), a binary struct
name ("Guid", "Vector", ...), "ArrayProperty<Inner>", "MapProperty<K,V>".
"""

PALWORLD_TYPE_HINTS = {
    ".worldSaveData.CharacterContainerSaveData.Key": "StructProperty",
    ".worldSaveData.CharacterContainerSaveData.Value": "StructProperty",
    ".worldSaveData.CharacterSaveParameterMap.Key": "StructProperty",
    ".worldSaveData.CharacterSaveParameterMap.Value": "StructProperty",
    ".worldSaveData.FoliageGridSaveDataMap.Key": "StructProperty",
    ".worldSaveData.FoliageGridSaveDataMap.Value": "StructProperty",
    ".worldSaveData.FoliageGridSaveDataMap.Value.ModelMap.Value": "StructProperty",
    ".worldSaveData.FoliageGridSaveDataMap.Value.ModelMap.Value.InstanceDataMap.Key": "StructProperty",
    ".worldSaveData.FoliageGridSaveDataMap.Value.ModelMap.Value.InstanceDataMap.Value": "StructProperty",
    ".worldSaveData.ItemContainerSaveData.Key": "StructProperty",
    ".worldSaveData.ItemContainerSaveData.Value": "StructProperty",
    ".worldSaveData.MapObjectSaveData.MapObjectSaveData.ConcreteModel.ModuleMap.Value": "StructProperty",
    ".worldSaveData.MapObjectSaveData.MapObjectSaveData.Model.EffectMap.Value": "StructProperty",
    ".worldSaveData.MapObjectSpawnerInStageSaveData.Key": "StructProperty",
    ".worldSaveData.MapObjectSpawnerInStageSaveData.Value": "StructProperty",
    ".worldSaveData.MapObjectSpawnerInStageSaveData.Value.SpawnerDataMapByLevelObjectInstanceId.Key": "Guid",
    ".worldSaveData.MapObjectSpawnerInStageSaveData.Value.SpawnerDataMapByLevelObjectInstanceId.Value": "StructProperty",
    ".worldSaveData.MapObjectSpawnerInStageSaveData.Value.SpawnerDataMapByLevelObjectInstanceId.Value.ItemMap.Value": "StructProperty",
    ".worldSaveData.WorkSaveData.WorkAssignMap.Value": "StructProperty",
    ".worldSaveData.BaseCampSaveData": "MapProperty<Guid,StructProperty>",
    ".worldSaveData.BaseCampSaveData.Key": "Guid",
    ".worldSaveData.BaseCampSaveData.Value": "StructProperty",
    ".worldSaveData.BaseCampSaveData.Value.ModuleMap.Value": "StructProperty",
    ".worldSaveData.GroupSaveDataMap.Key": "Guid",
    ".worldSaveData.GroupSaveDataMap.Value": "StructProperty",
    ".worldSaveData.EnemyCampSaveData.EnemyCampStatusMap.Value": "StructProperty",
    ".worldSaveData.DungeonSaveData.DungeonSaveData.MapObjectSaveData.MapObjectSaveData.Model.EffectMap.Value": "StructProperty",
    ".worldSaveData.DungeonSaveData.DungeonSaveData.MapObjectSaveData.MapObjectSaveData.ConcreteModel.ModuleMap.Value": "StructProperty",
    ".worldSaveData.InvaderSaveData.Key": "Guid",
    ".worldSaveData.InvaderSaveData.Value": "StructProperty",
    ".worldSaveData.OilrigSaveData.OilrigMap.Value": "StructProperty",
    ".worldSaveData.SupplySaveData.SupplyInfos.Key": "Guid",
    ".worldSaveData.SupplySaveData.SupplyInfos.Value": "StructProperty",
    ".worldSaveData.GuildExtraSaveDataMap.Key": "Guid",
    ".worldSaveData.GuildExtraSaveDataMap.Value": "StructProperty",
    ".worldSaveData.CharacterSaveParameterMap.Value.RawData": "ArrayProperty<ByteProperty>",
}

# Kept opaque no matter what hints or codecs exist for them (or below them)
DISABLED_PROPERTIES = {
    ".worldSaveData.BaseCampSaveData.Value.ModuleMap",
    ".worldSaveData.MapObjectSaveData.MapObjectSaveData.ConcreteModel.ModuleMap",
}
